"""
Copyright (c) 2025 Ayoub Ghriss and contributors
Licensed under CC BY-NC 4.0 (see LICENSE or https://creativecommons.org/licenses/by-nc/4.0/)
Non-commercial use only; contact us for commercial licensing.

Per-unit optimizer state held by a parameter-server shard.

Classes
-------
GradInfo    : one gradient push for a sparse key (gradient + show weight).
DenseValue  : AdaGrad state of a fixed-length dense block.
SparseValue : AdaGrad state of one sparse embedding key, with its weights
              stored inline for tiny dimensions and in an owned buffer
              otherwise.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Union

import torch
from torch import Tensor

from pskernel.codec import FLOAT_SIZE, ByteSink, ByteSource
from pskernel.errors import (
    PSKernelError,
    ShapeMismatchError,
    SizeMismatchError,
)
from pskernel.optimizers import AdaGrad, dense_adagrad, sparse_adagrad, to_f32


# Weights of values with dim below this are kept in the inline slot.
MINI_DIM = 2
UINT32_MOD = 1 << 32

GradLike = Union[Tensor, Sequence[float]]


def _as_grad(grad: GradLike) -> Tensor:
    return torch.as_tensor(grad, dtype=torch.float32).reshape(-1)


def _check_show(show: float) -> float:
    show = float(show)
    if not show >= 0.0:
        raise ValueError(f"show should be >= 0 but is: {show}")
    return show


@dataclass
class GradInfo:
    grad: Tensor
    show: float = 0.0

    def __post_init__(self):
        self.grad = _as_grad(self.grad)
        self.show = _check_show(self.show)


class DenseValue:
    """Weight, d2sum, g2sum and momentum of a dense block of ``length`` floats."""

    def __init__(
        self,
        policy: AdaGrad,
        length: int,
        generator: Optional[torch.Generator] = None,
    ):
        if length < 0:
            raise ValueError(f"length should be >= 0 but is: {length}")
        self.length = length
        self.weight = policy.init_weight(
            torch.empty(length, dtype=torch.float32), generator
        )
        self.d2sum = torch.zeros(length, dtype=torch.float32)
        self.g2sum = torch.full(
            (length,), policy.initial_g2sum, dtype=torch.float32
        )
        self.momentum = torch.zeros(length, dtype=torch.float32)

    def set_weight(self, data: bytes) -> None:
        """Restore only the weights from ``length`` raw float32 values."""
        expected = self.length * FLOAT_SIZE
        if len(data) != expected:
            raise SizeMismatchError(expected, len(data), "DenseValue.set_weight")
        self.weight.copy_(ByteSource(data).read_floats(self.length))

    def apply(self, policy: AdaGrad, grad: GradLike) -> None:
        grad = _as_grad(grad)
        if grad.numel() != self.length:
            raise ShapeMismatchError(
                self.length, grad.numel(), "DenseValue.apply"
            )
        dense_adagrad(
            self.weight,
            self.d2sum,
            self.g2sum,
            self.momentum,
            grad,
            learning_rate=policy.learning_rate,
            epsilon=policy.epsilon,
            mom_decay_rate=policy.mom_decay_rate,
        )

    def data_size(self) -> int:
        return self.length * FLOAT_SIZE * 4

    def serialized(self, sink: ByteSink) -> None:
        sink.write_floats(self.weight)
        sink.write_floats(self.d2sum)
        sink.write_floats(self.g2sum)
        sink.write_floats(self.momentum)

    def deserialized(self, source: ByteSource) -> None:
        # read everything first so a short buffer leaves the value intact
        parts = [source.read_floats(self.length) for _ in range(4)]
        for dst, src in zip(
            (self.weight, self.d2sum, self.g2sum, self.momentum), parts
        ):
            dst.copy_(src)


class _InlineWeight:
    """Fixed two-float slot living inside the value."""

    __slots__ = ("data",)
    owned = False

    def __init__(self):
        self.data = torch.zeros(MINI_DIM, dtype=torch.float32)

    def view(self, dim: int) -> Tensor:
        return self.data[:dim]

    def release(self) -> bool:
        return False


class _OwnedWeight:
    """Buffer sized to ``dim`` and owned by exactly one value."""

    __slots__ = ("data",)
    owned = True

    def __init__(self, dim: int):
        self.data: Optional[Tensor] = torch.zeros(dim, dtype=torch.float32)

    def view(self, dim: int) -> Tensor:
        if self.data is None:
            raise PSKernelError("weight buffer has already been released")
        return self.data

    def release(self) -> bool:
        if self.data is None:
            return False
        self.data = None
        return True


class SparseValue:
    __slots__ = ("_dim", "_w", "_g2sum", "_version", "_show")

    def __init__(
        self,
        dim: int,
        policy: AdaGrad,
        generator: Optional[torch.Generator] = None,
    ):
        if dim < 0:
            raise ValueError(f"dim should be >= 0 but is: {dim}")
        self._dim = dim
        # storage kind is fixed here and never changes afterwards
        self._w = _InlineWeight() if dim < MINI_DIM else _OwnedWeight(dim)
        policy.init_weight(self.weight, generator)
        self._g2sum = to_f32(policy.initial_g2sum)
        self._version = 0
        self._show = 0.0

    @property
    def dim(self) -> int:
        return self._dim

    def is_mini_dim(self) -> bool:
        return self._dim < MINI_DIM

    @property
    def owns_buffer(self) -> bool:
        return self._w.owned

    @property
    def released(self) -> bool:
        return self._w.owned and self._w.data is None

    @property
    def weight(self) -> Tensor:
        """A ``dim``-long view over whichever storage backs this value."""
        return self._w.view(self._dim)

    @property
    def g2sum(self) -> float:
        return self._g2sum

    @g2sum.setter
    def g2sum(self, value: float) -> None:
        self._g2sum = to_f32(value)

    @property
    def version(self) -> int:
        return self._version

    def increase_version(self) -> None:
        self._version = (self._version + 1) % UINT32_MOD

    @property
    def show(self) -> float:
        return self._show

    def add_show(self, show: float) -> None:
        self._show = to_f32(self._show + _check_show(show))

    def apply(self, policy: AdaGrad, grad_info: GradInfo) -> None:
        grad = grad_info.grad
        if grad.numel() != self._dim:
            raise ShapeMismatchError(self._dim, grad.numel(), "SparseValue.apply")
        # nothing is written back unless the step succeeds
        show = to_f32(self._show + _check_show(grad_info.show))
        g2sum = sparse_adagrad(self.weight, self._g2sum, show, grad, policy)
        self._show = show
        self._g2sum = g2sum
        self.increase_version()

    def show_decay(self, policy: AdaGrad) -> None:
        self._show = to_f32(self._show * policy.show_decay_rate)
        self._g2sum = to_f32(self._g2sum * policy.g2sum_decay_rate)

    def data_size(self) -> int:
        return self._dim * FLOAT_SIZE + 12

    def serialized(self, sink: ByteSink) -> None:
        sink.write_floats(self.weight)
        sink.write_f32(self._g2sum)
        sink.write_u32(self._version)
        sink.write_f32(self._show)

    def deserialized(self, source: ByteSource) -> None:
        weight = source.read_floats(self._dim)
        g2sum = source.read_f32()
        version = source.read_u32()
        show = source.read_f32()
        self.weight.copy_(weight)
        self._g2sum = g2sum
        self._version = version
        self._show = show

    def release(self) -> bool:
        """Free the owned weight buffer; True only on the call that frees it."""
        return self._w.release()

    def __repr__(self) -> str:
        return (
            f"SparseValue(dim={self._dim}, g2sum={self._g2sum}, "
            f"version={self._version}, show={self._show})"
        )
