"""Unit tests for solver and net definition loading."""

from __future__ import annotations

import pytest

from brew.config import NetState
from brew.config import load_net_definition
from brew.config import load_solver_config
from brew.config import parse_net_definition
from brew.config import parse_phase
from brew.config import parse_stages
from brew.errors import ConfigurationError
from conftest import mlp_net_document
from conftest import write_solver
from conftest import write_yaml


def test_solver_defaults_and_overrides(tmp_path, mlp_net_path) -> None:
    path = write_solver(tmp_path, mlp_net_path, solver_type="Adam", momentum=0.8, max_iter=12)
    config = load_solver_config(str(path))

    assert config.net == str(mlp_net_path)
    assert config.solver_type == "Adam"
    assert config.momentum == pytest.approx(0.8)
    assert config.max_iter == 12
    assert config.lr_policy == "fixed"
    assert config.solver_mode == "CPU"
    assert config.solver_count == 1
    assert isinstance(config.train_state, NetState)
    assert config.train_state.phase == "TRAIN"


def test_net_paths_resolve_relative_to_solver_file(tmp_path, monkeypatch) -> None:
    write_yaml(tmp_path / "defs" / "net.yaml", mlp_net_document())
    write_yaml(
        tmp_path / "defs" / "solver.yaml",
        {"net": "net.yaml", "test_net": ["net.yaml"], "test_iter": [1]},
    )
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)

    config = load_solver_config(str(tmp_path / "defs" / "solver.yaml"))
    assert config.net == str(tmp_path / "defs" / "net.yaml")
    assert config.test_net == [str(tmp_path / "defs" / "net.yaml")]


def test_train_state_is_parsed(tmp_path, mlp_net_path) -> None:
    path = write_solver(tmp_path, mlp_net_path, train_state={"level": 2, "stages": ["finetune"]})
    config = load_solver_config(str(path))
    assert config.train_state.level == 2
    assert config.train_state.stages == ["finetune"]


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"test_net": ["x.yaml"], "test_iter": []}, "test_iter must be specified"),
        ({"lr_policy": "step", "stepsize": 0}, "requires stepsize"),
        ({"lr_policy": "cosine"}, "lr_policy must be one of"),
        ({"iter_size": 0}, "iter_size"),
        ({"solver_mode": "TPU"}, "solver_mode"),
        ({"train_state": {"phase": "TEST"}}, "train_state.phase"),
    ],
)
def test_invalid_solver_definitions_are_rejected(tmp_path, mlp_net_path, overrides, message) -> None:
    path = write_solver(tmp_path, mlp_net_path, **overrides)
    with pytest.raises(ConfigurationError, match=message):
        load_solver_config(str(path))


def test_unknown_solver_key_is_a_configuration_error(tmp_path, mlp_net_path) -> None:
    path = write_solver(tmp_path, mlp_net_path, not_a_field=1)
    with pytest.raises(ConfigurationError, match="Failed to parse solver definition"):
        load_solver_config(str(path))


def test_missing_solver_file(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        load_solver_config(str(tmp_path / "missing.yaml"))


def test_parse_phase_and_stages() -> None:
    assert parse_phase("", "TRAIN") == "TRAIN"
    assert parse_phase("TEST", "TRAIN") == "TEST"
    with pytest.raises(ConfigurationError, match="phase must be"):
        parse_phase("VALIDATE", "TRAIN")

    assert parse_stages("") == []
    assert parse_stages(" a, b ,,") == ["a", "b"]


def test_layer_filtering_by_phase_level_and_stage() -> None:
    definition = parse_net_definition(
        {
            "name": "filtered",
            "layers": [
                {"name": "always", "type": "ReLU"},
                {"name": "test_only", "type": "ReLU", "include": {"phase": "TEST"}},
                {"name": "deep", "type": "ReLU", "include": [{"min_level": 2}]},
                {"name": "staged", "type": "ReLU", "include": [{"stage": ["a", "b"]}]},
                {"name": "not_b", "type": "ReLU", "exclude": [{"stage": "b"}]},
            ],
        }
    )

    def names(state: NetState) -> list[str]:
        return [layer.name for layer in definition.filtered(state).layers]

    assert names(NetState(phase="TRAIN")) == ["always", "not_b"]
    assert names(NetState(phase="TEST")) == ["always", "test_only", "not_b"]
    assert names(NetState(phase="TRAIN", level=3)) == ["always", "deep", "not_b"]
    assert names(NetState(phase="TRAIN", stages=["a"])) == ["always", "not_b"]
    assert names(NetState(phase="TRAIN", stages=["a", "b"])) == ["always", "staged"]


def test_net_definition_errors(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="non-empty 'layers'"):
        parse_net_definition({"layers": []})
    with pytest.raises(ConfigurationError, match="missing 'type'"):
        parse_net_definition({"layers": [{"name": "a"}]})
    with pytest.raises(ConfigurationError, match="Duplicate layer names"):
        parse_net_definition({"layers": [{"name": "a", "type": "ReLU"}, {"name": "a", "type": "ReLU"}]})
    with pytest.raises(ConfigurationError, match="phase must be"):
        parse_net_definition({"layers": [{"name": "a", "type": "ReLU", "include": {"phase": "EVAL"}}]})
    with pytest.raises(ConfigurationError, match="not found"):
        load_net_definition(str(tmp_path / "missing.yaml"))


def test_net_definition_name_defaults_to_file_stem(tmp_path) -> None:
    document = mlp_net_document()
    del document["name"]
    path = write_yaml(tmp_path / "tiny.yaml", document)
    definition = load_net_definition(str(path))
    assert definition.name == "tiny"
    assert [layer.name for layer in definition.layers][:2] == ["data", "ip1"]
    assert definition.layers[0].top == ("data", "label")
    assert definition.layers[1].bottom == ("data",)
