"""
nano-brew package entrypoint.

Layer-graph training with a solver, multi-device gradient averaging and a cross-device
layer verification harness. The command line tool lives in `brew.cli`.
"""

from __future__ import annotations

from brew.config import NetDefinition
from brew.config import NetState
from brew.config import SolverConfig
from brew.config import load_net_definition
from brew.config import load_solver_config

__all__ = ["NetDefinition", "NetState", "SolverConfig", "load_net_definition", "load_solver_config"]
