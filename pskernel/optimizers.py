"""
Copyright (c) 2025 Ayoub Ghriss and contributors
Licensed under CC BY-NC 4.0 (see LICENSE or https://creativecommons.org/licenses/by-nc/4.0/)
Non-commercial use only; contact us for commercial licensing.
AdaGrad policy and update rules for parameter-server values.
"""

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch
from torch import Tensor


EPS = 1e-8


def to_f32(value: float) -> float:
    """Round a python float to the nearest float32."""
    return float(np.float32(value))


@dataclass(frozen=True)
class AdaGrad:
    """Read-only optimizer configuration shared by every value of a table."""

    learning_rate: float = 0.01
    initial_g2sum: float = 0.0
    initial_range: float = 0.0
    epsilon: float = EPS
    mom_decay_rate: float = 0.0
    show_decay_rate: float = 0.98
    g2sum_decay_rate: float = 1.0
    show_scale: float = 0.0
    seed: int = 0

    def __post_init__(self):
        if not 0.0 <= self.learning_rate:
            raise ValueError(
                f"Learning rate should be >= 0 but is: {self.learning_rate}"
            )
        if not 0.0 <= self.initial_g2sum:
            raise ValueError(
                f"initial_g2sum should be >= 0 but is: {self.initial_g2sum}"
            )
        if not 0.0 <= self.initial_range:
            raise ValueError(
                f"initial_range should be >= 0 but is: {self.initial_range}"
            )
        if not 0.0 < self.epsilon:
            raise ValueError(f"epsilon should be > 0 but is: {self.epsilon}")
        if not 0.0 <= self.mom_decay_rate < 1.0:
            raise ValueError(
                f"mom_decay_rate should be in [0, 1) but is: {self.mom_decay_rate}"
            )
        for name in ("show_decay_rate", "g2sum_decay_rate"):
            rate = getattr(self, name)
            if not 0.0 <= rate <= 1.0:
                raise ValueError(f"{name} should be in [0, 1] but is: {rate}")
        if not 0.0 <= self.show_scale:
            raise ValueError(
                f"show_scale should be >= 0 but is: {self.show_scale}"
            )

    def make_generator(self) -> torch.Generator:
        gen = torch.Generator()
        gen.manual_seed(self.seed)
        return gen

    def init_weight(
        self, out: Tensor, generator: Optional[torch.Generator] = None
    ) -> Tensor:
        """Fill ``out`` with the initial weight, zero or bounded-uniform."""
        if self.initial_range == 0.0 or out.numel() == 0:
            return out.zero_()
        r = self.initial_range
        return out.uniform_(-r, r, generator=generator)

    def sparse_scale(self, g2sum: float, show: float) -> float:
        """Per-key step size derived from the shared accumulator and show."""
        scale = self.learning_rate / (self.epsilon + math.sqrt(g2sum))
        if self.show_scale > 0.0:
            scale /= math.sqrt(1.0 + self.show_scale * show)
        return scale


@torch.no_grad()
def dense_adagrad(
    weight: Tensor,
    d2sum: Tensor,
    g2sum: Tensor,
    momentum: Tensor,
    grad: Tensor,
    *,
    learning_rate: float,
    epsilon: float,
    mom_decay_rate: float,
) -> None:
    """In-place AdaGrad step with momentum over the non-zero gradient entries.

    Entries whose gradient is exactly zero keep all four state values.
    """
    touched = grad != 0
    if not bool(touched.any()):
        return
    g = grad[touched]

    d2sum[touched] += 1.0
    g2sum[touched] += g * g

    m = momentum[touched].mul_(mom_decay_rate).add_(g)
    momentum[touched] = m

    denom = g2sum[touched].sqrt().add_(epsilon)
    weight[touched] -= learning_rate * m / denom


@torch.no_grad()
def sparse_adagrad(
    weight: Tensor,
    g2sum: float,
    show: float,
    grad: Tensor,
    policy: AdaGrad,
) -> float:
    """In-place update of ``weight``; returns the new shared ``g2sum``.

    The squared gradient is averaged over the dimension so that the scalar
    accumulator does not grow with the embedding size.
    """
    dim = weight.numel()
    if dim > 0:
        add_g2sum = float(grad.double().square().sum()) / dim
        g2sum = to_f32(g2sum + add_g2sum)
        scale = policy.sparse_scale(g2sum, show)
        weight.sub_(grad * scale)
    return g2sum
