"""Signal-driven stop/snapshot requests for a running solver.

A ``SignalHandler`` is a scoped token: entering it binds SIGINT/SIGHUP to the configured actions,
leaving it restores whatever handlers were installed before. The solver polls the token at
iteration boundaries through ``get_requested_action``.
"""

from __future__ import annotations

import enum
import signal
from types import FrameType
from typing import Any
from typing import Optional

from brew.errors import ConfigurationError
from brew.logging import get_logger


logger = get_logger(__name__)


class SolverAction(enum.Enum):
    """What the solver should do at the next iteration boundary."""

    NONE = 0
    STOP = 1
    SNAPSHOT = 2
    UNKNOWN = 3

    @classmethod
    def from_code(cls, code: int) -> "SolverAction":
        try:
            return cls(int(code))
        except ValueError:
            return cls.UNKNOWN


_EFFECTS = {
    "stop": SolverAction.STOP,
    "snapshot": SolverAction.SNAPSHOT,
    "none": SolverAction.NONE,
}


def parse_signal_effect(value: str) -> SolverAction:
    """Map a ``--sigint_effect``/``--sighup_effect`` value to its action."""
    action = _EFFECTS.get(value)
    if action is None:
        raise ConfigurationError(
            f"Invalid signal effect '{value}' (expected one of: {', '.join(_EFFECTS)})"
        )
    return action


class SignalHandler:
    """Scoped mapping from SIGINT/SIGHUP to pending solver actions.

    Usage:
        with SignalHandler(SolverAction.STOP, SolverAction.SNAPSHOT) as handler:
            solver.set_action_function(handler.get_requested_action)
            solver.solve()
    """

    def __init__(self, sigint_effect: SolverAction, sighup_effect: SolverAction) -> None:
        for effect in (sigint_effect, sighup_effect):
            if effect not in (SolverAction.STOP, SolverAction.SNAPSHOT, SolverAction.NONE):
                raise ConfigurationError(f"Unsupported signal effect: {effect}")
        self.sigint_effect = sigint_effect
        self.sighup_effect = sighup_effect
        self._pending = SolverAction.NONE
        self._previous: dict[int, Any] = {}
        self.bindings: dict[int, SolverAction] = {int(signal.SIGINT): sigint_effect}
        sighup = getattr(signal, "SIGHUP", None)
        if sighup is not None:
            self.bindings[int(sighup)] = sighup_effect

    def _handle(self, signum: int, frame: Optional[FrameType]) -> None:
        del frame
        # Single store; a later signal replaces an unread earlier one.
        self._pending = self.bindings[signum]

    def __enter__(self) -> "SignalHandler":
        self._pending = SolverAction.NONE
        for signum in self.bindings:
            self._previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle)
        logger.debug(
            "Signal handlers installed (SIGINT -> %s, SIGHUP -> %s)",
            self.sigint_effect.name,
            self.sighup_effect.name,
        )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        for signum, previous in self._previous.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()

    def get_requested_action(self) -> SolverAction:
        """Return and clear the pending action (``NONE`` when nothing is pending)."""
        action = self._pending
        self._pending = SolverAction.NONE
        return action
