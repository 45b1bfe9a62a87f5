"""
Update rules for the solver.
"""

from __future__ import annotations

from typing import Sequence

import torch
from torch.optim import SGD
from torch.optim import Adadelta
from torch.optim import Adagrad
from torch.optim import Adam
from torch.optim import Optimizer
from torch.optim import RMSprop

from brew.config import SolverConfig
from brew.errors import ConfigurationError


SOLVER_TYPES = ("SGD", "Nesterov", "Adam", "AdaGrad", "AdaDelta", "RMSProp")


def create_optimizer(params: Sequence[torch.nn.Parameter], config: SolverConfig) -> Optimizer:
    """Create the torch optimizer matching ``config.solver_type``."""
    if config.base_lr <= 0:
        raise ConfigurationError("base_lr must be positive")
    if config.weight_decay < 0:
        raise ConfigurationError("weight_decay must be non-negative")

    trainable = [param for param in params if param.requires_grad]
    if not trainable:
        raise ConfigurationError("train net has no learnable parameters")

    solver_type = config.solver_type
    if solver_type == "SGD":
        return SGD(
            trainable,
            lr=config.base_lr,
            momentum=config.momentum,
            weight_decay=config.weight_decay,
        )
    if solver_type == "Nesterov":
        if config.momentum <= 0:
            raise ConfigurationError("Nesterov solver requires momentum > 0")
        return SGD(
            trainable,
            lr=config.base_lr,
            momentum=config.momentum,
            weight_decay=config.weight_decay,
            nesterov=True,
        )
    if solver_type == "Adam":
        return Adam(
            trainable,
            lr=config.base_lr,
            betas=(config.momentum or 0.9, config.momentum2),
            eps=config.delta,
            weight_decay=config.weight_decay,
        )
    if solver_type == "AdaGrad":
        return Adagrad(
            trainable,
            lr=config.base_lr,
            eps=config.delta,
            weight_decay=config.weight_decay,
        )
    if solver_type == "AdaDelta":
        # momentum is the decay of the running averages
        return Adadelta(
            trainable,
            lr=config.base_lr,
            rho=config.momentum or 0.95,
            eps=config.delta,
            weight_decay=config.weight_decay,
        )
    if solver_type == "RMSProp":
        return RMSprop(
            trainable,
            lr=config.base_lr,
            alpha=config.rms_decay,
            eps=config.delta,
            weight_decay=config.weight_decay,
        )
    raise ConfigurationError(f"solver_type must be one of: {', '.join(SOLVER_TYPES)}")
