"""
Unit tests for update-rule construction.

Tests verify:
1. Every solver type maps to the matching torch optimizer and hyper-parameters
2. Invalid combinations are rejected before any step runs
"""

import pytest
import torch
import torch.nn as nn

from brew.config import SolverConfig
from brew.errors import ConfigurationError
from brew.optimizer import SOLVER_TYPES
from brew.optimizer import create_optimizer


def _params():
    return list(nn.Linear(4, 2).parameters())


def _config(**overrides) -> SolverConfig:
    config = SolverConfig(net="net.yaml")
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


class TestCreateOptimizer:
    """Test cases for create_optimizer."""

    def test_sgd_with_momentum(self):
        optimizer = create_optimizer(_params(), _config(base_lr=0.05, momentum=0.9, weight_decay=1e-4))
        assert isinstance(optimizer, torch.optim.SGD)
        group = optimizer.param_groups[0]
        assert group["lr"] == pytest.approx(0.05)
        assert group["momentum"] == pytest.approx(0.9)
        assert group["weight_decay"] == pytest.approx(1e-4)
        assert group["nesterov"] is False

    def test_nesterov_requires_momentum(self):
        optimizer = create_optimizer(_params(), _config(solver_type="Nesterov", momentum=0.9))
        assert optimizer.param_groups[0]["nesterov"] is True
        with pytest.raises(ConfigurationError, match="momentum > 0"):
            create_optimizer(_params(), _config(solver_type="Nesterov", momentum=0.0))

    def test_adam_betas_and_eps(self):
        optimizer = create_optimizer(
            _params(), _config(solver_type="Adam", momentum=0.8, momentum2=0.99, delta=1e-6)
        )
        assert isinstance(optimizer, torch.optim.Adam)
        assert optimizer.param_groups[0]["betas"] == (0.8, 0.99)
        assert optimizer.param_groups[0]["eps"] == pytest.approx(1e-6)

    def test_adam_defaults_beta1_without_momentum(self):
        optimizer = create_optimizer(_params(), _config(solver_type="Adam"))
        assert optimizer.param_groups[0]["betas"][0] == pytest.approx(0.9)

    def test_adagrad_and_rmsprop(self):
        assert isinstance(create_optimizer(_params(), _config(solver_type="AdaGrad")), torch.optim.Adagrad)
        rmsprop = create_optimizer(_params(), _config(solver_type="RMSProp", rms_decay=0.95))
        assert isinstance(rmsprop, torch.optim.RMSprop)
        assert rmsprop.param_groups[0]["alpha"] == pytest.approx(0.95)

    def test_adadelta_uses_momentum_as_decay(self):
        optimizer = create_optimizer(
            _params(), _config(solver_type="AdaDelta", base_lr=1.0, momentum=0.9, delta=1e-6)
        )
        assert isinstance(optimizer, torch.optim.Adadelta)
        group = optimizer.param_groups[0]
        assert group["rho"] == pytest.approx(0.9)
        assert group["eps"] == pytest.approx(1e-6)
        assert create_optimizer(_params(), _config(solver_type="AdaDelta")).param_groups[0]["rho"] == pytest.approx(0.95)

    def test_every_declared_type_builds(self):
        for solver_type in SOLVER_TYPES:
            create_optimizer(_params(), _config(solver_type=solver_type, momentum=0.9))

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"solver_type": "LBFGS"}, "solver_type must be one of"),
            ({"base_lr": 0.0}, "base_lr must be positive"),
            ({"weight_decay": -1.0}, "weight_decay"),
        ],
    )
    def test_invalid_configs(self, overrides, message):
        with pytest.raises(ConfigurationError, match=message):
            create_optimizer(_params(), _config(**overrides))

    def test_no_learnable_parameters(self):
        frozen = nn.Parameter(torch.zeros(2), requires_grad=False)
        with pytest.raises(ConfigurationError, match="no learnable parameters"):
            create_optimizer([frozen], _config())
