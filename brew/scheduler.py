"""
Learning rate policies.
"""

import math

from torch.optim import Optimizer

from brew.config import SolverConfig


class LearningRatePolicy:
    """Iteration-indexed learning rate (fixed, step, exp, inv, multistep, poly)."""

    def __init__(self, optimizer: Optimizer, config: SolverConfig) -> None:
        """
        Args:
            optimizer: PyTorch optimizer whose param groups receive the rate
            config: Solver config carrying base_lr, lr_policy and the policy coefficients
        """
        if config.lr_policy == "poly" and config.max_iter <= 0:
            raise ValueError("lr_policy 'poly' requires max_iter > 0")
        self.optimizer = optimizer
        self.policy = config.lr_policy
        self.base_lr = config.base_lr
        self.gamma = config.gamma
        self.power = config.power
        self.stepsize = config.stepsize
        self.stepvalue = sorted(config.stepvalue)
        self.max_iter = config.max_iter

    def get_lr(self, iteration: int) -> float:
        """Rate for ``iteration``; depends on nothing else, so restores need no extra state."""
        if self.policy == "fixed":
            return self.base_lr
        if self.policy == "step":
            return self.base_lr * self.gamma ** (iteration // self.stepsize)
        if self.policy == "exp":
            return self.base_lr * self.gamma ** iteration
        if self.policy == "inv":
            return self.base_lr * (1.0 + self.gamma * iteration) ** (-self.power)
        if self.policy == "multistep":
            current_step = sum(1 for value in self.stepvalue if iteration >= value)
            return self.base_lr * self.gamma ** current_step
        if self.policy == "poly":
            progress = min(max(iteration / self.max_iter, 0.0), 1.0)
            return self.base_lr * math.pow(1.0 - progress, self.power)
        raise ValueError(f"Unknown lr_policy: {self.policy}")

    def apply(self, iteration: int) -> float:
        """Write the rate for ``iteration`` into every param group."""
        lr = self.get_lr(iteration)
        for param_group in self.optimizer.param_groups:
            param_group["lr"] = lr
        return lr
