"""
Configuration system for nano-brew.

Two documents drive every command:
- the solver definition: an OmegaConf structured config (``SolverConfig``) merged with a YAML file
- the net definition: a YAML layer list parsed into ``NetDefinition``

Both are validated here so that the rest of the code only ever sees well-formed values.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any
from typing import List
from typing import Optional

import yaml
from omegaconf import MISSING
from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException

from brew.errors import ConfigurationError


PHASES = ("TRAIN", "TEST")
SOLVER_MODES = ("CPU", "GPU")
LR_POLICIES = ("fixed", "step", "exp", "inv", "multistep", "poly")


@dataclass
class NetState:
    """Phase, level and stages used to filter layers of a net definition."""
    phase: str = "TRAIN"
    level: int = 0
    stages: List[str] = field(default_factory=list)


@dataclass
class SolverConfig:
    """Solver definition (schema for the YAML solver file)."""

    # Nets
    net: str = MISSING
    test_net: List[str] = field(default_factory=list)
    train_state: NetState = field(default_factory=NetState)

    # Testing
    test_iter: List[int] = field(default_factory=list)
    test_interval: int = 0
    test_initialization: bool = True

    # Update rule
    solver_type: str = "SGD"
    base_lr: float = 0.01
    lr_policy: str = "fixed"
    gamma: float = 0.1
    power: float = 1.0
    stepsize: int = 0
    stepvalue: List[int] = field(default_factory=list)
    momentum: float = 0.0
    momentum2: float = 0.999
    delta: float = 1e-8
    rms_decay: float = 0.99
    weight_decay: float = 0.0

    # Loop control
    max_iter: int = 100
    iter_size: int = 1
    display: int = 0
    average_loss: int = 1

    # Snapshots
    snapshot: int = 0
    snapshot_prefix: str = "snapshots/brew"
    snapshot_after_train: bool = True

    # Placement. The lifecycle controller owns these three after loading.
    solver_mode: str = "CPU"
    device_id: Optional[int] = None
    solver_count: int = 1

    random_seed: int = 1701
    tensorboard_dir: Optional[str] = None


def _resolve_relative(path: str, base_dir: Path) -> str:
    """Resolve a path relative to the file that referenced it when cwd does not have it."""
    candidate = Path(path)
    if candidate.is_absolute() or candidate.exists():
        return path
    relative = base_dir / candidate
    if relative.exists():
        return str(relative)
    return path


def validate_solver_config(config: SolverConfig) -> None:
    """Validate cross-field solver invariants."""
    if not config.net:
        raise ConfigurationError("solver definition must name a train net")
    if config.solver_mode not in SOLVER_MODES:
        raise ConfigurationError("solver_mode must be CPU or GPU")
    if config.lr_policy not in LR_POLICIES:
        raise ConfigurationError(f"lr_policy must be one of: {', '.join(LR_POLICIES)}")
    if config.lr_policy == "step" and config.stepsize <= 0:
        raise ConfigurationError("lr_policy 'step' requires stepsize > 0")
    if config.max_iter < 0:
        raise ConfigurationError("max_iter must be >= 0")
    if config.iter_size < 1:
        raise ConfigurationError("iter_size must be >= 1")
    if config.solver_count < 1:
        raise ConfigurationError("solver_count must be >= 1")
    if config.average_loss < 1:
        raise ConfigurationError("average_loss must be >= 1")
    if config.device_id is not None and config.device_id < 0:
        raise ConfigurationError("device_id must be >= 0")
    if len(config.test_iter) != len(config.test_net):
        raise ConfigurationError(
            f"test_iter must be specified for each test net "
            f"({len(config.test_iter)} given for {len(config.test_net)} nets)"
        )
    if config.test_interval > 0 and not config.test_net:
        raise ConfigurationError("test_interval is set but no test_net is defined")
    if config.train_state.phase != "TRAIN":
        raise ConfigurationError("train_state.phase must be TRAIN")


def load_solver_config(path: str) -> SolverConfig:
    """Load and validate a solver definition file."""
    solver_path = Path(path)
    if not solver_path.is_file():
        raise ConfigurationError(f"Solver definition not found: {path}")

    schema = OmegaConf.structured(SolverConfig)
    try:
        merged = OmegaConf.merge(schema, OmegaConf.load(solver_path))
        config = OmegaConf.to_object(merged)
    except (OmegaConfBaseException, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to parse solver definition {path}: {exc}") from exc

    assert isinstance(config, SolverConfig)
    base_dir = solver_path.parent
    config.net = _resolve_relative(config.net, base_dir)
    config.test_net = [_resolve_relative(item, base_dir) for item in config.test_net]
    validate_solver_config(config)
    return config


def parse_phase(value: Optional[str], default: str) -> str:
    """Parse a ``--phase`` value; empty means ``default``."""
    if not value:
        return default
    if value not in PHASES:
        raise ConfigurationError('phase must be "TRAIN" or "TEST"')
    return value


def parse_stages(value: Optional[str]) -> list[str]:
    """Split a comma-separated ``--stage`` value."""
    if not value:
        return []
    return [stage.strip() for stage in value.split(",") if stage.strip()]


# --------------------------------------------------------------------------------------
# Net definitions
# --------------------------------------------------------------------------------------


@dataclass
class NetStateRule:
    """Include/exclude rule attached to a layer."""
    phase: Optional[str] = None
    min_level: Optional[int] = None
    max_level: Optional[int] = None
    stage: tuple[str, ...] = ()
    not_stage: tuple[str, ...] = ()

    def matches(self, state: NetState) -> bool:
        """Return whether ``state`` satisfies every clause of this rule."""
        if self.phase is not None and self.phase != state.phase:
            return False
        if self.min_level is not None and state.level < self.min_level:
            return False
        if self.max_level is not None and state.level > self.max_level:
            return False
        if any(stage not in state.stages for stage in self.stage):
            return False
        if any(stage in state.stages for stage in self.not_stage):
            return False
        return True


@dataclass
class LayerDefinition:
    """One layer entry of a net definition."""
    name: str
    type: str
    bottom: tuple[str, ...] = ()
    top: tuple[str, ...] = ()
    param: dict[str, Any] = field(default_factory=dict)
    loss_weight: tuple[float, ...] = ()
    include: tuple[NetStateRule, ...] = ()
    exclude: tuple[NetStateRule, ...] = ()

    def included_in(self, state: NetState) -> bool:
        """Layer filtering: any include rule admits it, otherwise no exclude rule may match."""
        if self.include:
            return any(rule.matches(state) for rule in self.include)
        return not any(rule.matches(state) for rule in self.exclude)


@dataclass
class NetDefinition:
    """Parsed net definition."""
    name: str
    layers: list[LayerDefinition]

    def filtered(self, state: NetState) -> "NetDefinition":
        """Return a copy holding only the layers active for ``state``."""
        return NetDefinition(
            name=self.name,
            layers=[layer for layer in self.layers if layer.included_in(state)],
        )


def _as_tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def _parse_rule(raw: Any, where: str) -> NetStateRule:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where}: include/exclude rules must be mappings")
    phase = raw.get("phase")
    if phase is not None and phase not in PHASES:
        raise ConfigurationError(f'{where}: phase must be "TRAIN" or "TEST"')
    return NetStateRule(
        phase=phase,
        min_level=raw.get("min_level"),
        max_level=raw.get("max_level"),
        stage=tuple(str(s) for s in _as_tuple(raw.get("stage"))),
        not_stage=tuple(str(s) for s in _as_tuple(raw.get("not_stage"))),
    )


def _parse_layer(raw: Any, index: int) -> LayerDefinition:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"layer #{index} must be a mapping")
    where = f"layer #{index}"
    for key in ("name", "type"):
        if not raw.get(key):
            raise ConfigurationError(f"{where} is missing '{key}'")
    where = f"layer '{raw['name']}'"
    param = raw.get("param") or {}
    if not isinstance(param, dict):
        raise ConfigurationError(f"{where}: param must be a mapping")
    return LayerDefinition(
        name=str(raw["name"]),
        type=str(raw["type"]),
        bottom=tuple(str(b) for b in _as_tuple(raw.get("bottom"))),
        top=tuple(str(t) for t in _as_tuple(raw.get("top"))),
        param=dict(param),
        loss_weight=tuple(float(w) for w in _as_tuple(raw.get("loss_weight"))),
        include=tuple(_parse_rule(rule, where) for rule in _as_tuple(raw.get("include"))),
        exclude=tuple(_parse_rule(rule, where) for rule in _as_tuple(raw.get("exclude"))),
    )


def parse_net_definition(document: Any, source: str = "<memory>") -> NetDefinition:
    """Build a ``NetDefinition`` from an already-parsed YAML document."""
    if not isinstance(document, dict):
        raise ConfigurationError(f"Net definition {source} must be a mapping")
    raw_layers = document.get("layers")
    if not isinstance(raw_layers, list) or not raw_layers:
        raise ConfigurationError(f"Net definition {source} must define a non-empty 'layers' list")
    layers = [_parse_layer(raw, index) for index, raw in enumerate(raw_layers)]
    names = [layer.name for layer in layers]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate layer names in {source}: {', '.join(duplicates)}")
    return NetDefinition(name=str(document.get("name", Path(source).stem)), layers=layers)


def load_net_definition(path: str) -> NetDefinition:
    """Load a net definition YAML file."""
    net_path = Path(path)
    if not net_path.is_file():
        raise ConfigurationError(f"Net definition not found: {path}")
    try:
        with net_path.open("r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Failed to parse net definition {path}: {exc}") from exc
    return parse_net_definition(document, source=str(path))
