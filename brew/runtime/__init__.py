"""Runtime orchestration for a training run: signals, strategies and the solver lifecycle.

The package uses lazy exports to avoid import cycles between the solver and the
synchronization helpers that wrap it.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any


_EXPORTS: dict[str, tuple[str, str]] = {
    "ActionQuery": ("brew.runtime.contracts", "ActionQuery"),
    "LayerGraph": ("brew.runtime.contracts", "LayerGraph"),
    "SolverCallback": ("brew.runtime.contracts", "SolverCallback"),
    "SolverLike": ("brew.runtime.contracts", "SolverLike"),
    "Transport": ("brew.runtime.contracts", "Transport"),
    "LifecycleState": ("brew.runtime.lifecycle", "LifecycleState"),
    "SolverLifecycle": ("brew.runtime.lifecycle", "SolverLifecycle"),
    "SolverRequest": ("brew.runtime.lifecycle", "SolverRequest"),
    "P2PSync": ("brew.runtime.p2p", "P2PSync"),
    "SignalHandler": ("brew.runtime.signals", "SignalHandler"),
    "SolverAction": ("brew.runtime.signals", "SolverAction"),
    "parse_signal_effect": ("brew.runtime.signals", "parse_signal_effect"),
    "DistributedStrategy": ("brew.runtime.strategy", "DistributedStrategy"),
    "LocalStrategy": ("brew.runtime.strategy", "LocalStrategy"),
    "PeerToPeerStrategy": ("brew.runtime.strategy", "PeerToPeerStrategy"),
    "select_strategy": ("brew.runtime.strategy", "select_strategy"),
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily resolve runtime exports to avoid import-time dependency cycles."""
    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module_name, attr_name = target
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
