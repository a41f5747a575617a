"""
Copyright (c) 2025 Ayoub Ghriss and contributors
Licensed under CC BY-NC 4.0 (see LICENSE or https://creativecommons.org/licenses/by-nc/4.0/)
Non-commercial use only; contact us for commercial licensing.

Tables made of several kernel blocks, as held by one parameter-server rank.
"""

import logging
import math
from typing import List, Tuple, Union

import torch
from torch import Tensor

from pskernel.blocks import DenseKernelBlock, SparseKernelBlock
from pskernel.codec import FLOAT_SIZE, ByteSink, ByteSource
from pskernel.errors import ShapeMismatchError, SizeMismatchError
from pskernel.optimizers import AdaGrad
from pskernel.values import GradInfo, GradLike, SparseValue

logger = logging.getLogger(__name__)

BLOCK_NUM = 8


def _block_generator(policy: AdaGrad, block_id: int) -> torch.Generator:
    gen = torch.Generator()
    gen.manual_seed(policy.seed + block_id)
    return gen


class SparseKernel:
    """Sparse table routing each id to ``blocks[id % block_num]``."""

    def __init__(self, policy: AdaGrad, dim: int, block_num: int = BLOCK_NUM):
        if block_num <= 0:
            raise ValueError(f"block_num should be > 0 but is: {block_num}")
        self.policy = policy
        self.dim = dim
        self.blocks: List[SparseKernelBlock] = [
            SparseKernelBlock(policy, dim, _block_generator(policy, i))
            for i in range(block_num)
        ]

    @property
    def block_num(self) -> int:
        return len(self.blocks)

    def block_id(self, key: int) -> int:
        return key % self.block_num

    def block(self, key: int) -> SparseKernelBlock:
        return self.blocks[self.block_id(key)]

    def __len__(self) -> int:
        return sum(len(b) for b in self.blocks)

    def __contains__(self, key: int) -> bool:
        return key in self.block(key)

    def get(self, key: int) -> SparseValue:
        return self.block(key).get(key)

    def weight(self, key: int) -> Tensor:
        return self.block(key).weight(key)

    def apply(
        self, key: int, grad_info: Union[GradInfo, GradLike]
    ) -> SparseValue:
        return self.block(key).apply(key, grad_info)

    def show_decay(self) -> None:
        for block in self.blocks:
            block.show_decay()

    def evict_cold(self, threshold: float) -> int:
        """Evict every key whose show is below ``threshold``."""
        evicted = 0
        for block in self.blocks:
            for key in block.cold_keys(threshold):
                block.evict(key)
                evicted += 1
        if evicted:
            logger.info(
                "evicted %d cold keys (show < %g), %d left",
                evicted,
                threshold,
                len(self),
            )
        return evicted

    def dump(self, block_id: int, sink: ByteSink) -> None:
        self.blocks[block_id].dump(sink)

    def load(self, block_id: int, source: ByteSource) -> int:
        return self.blocks[block_id].load(source)


class DenseKernel:
    """A flat dense parameter split into consecutive fixed-size blocks.

    Block ``i`` covers ``[i * block_size, (i + 1) * block_size)``; the last
    block is shorter when ``total_length`` is not a multiple of
    ``block_size``. Each block holds a single value under its own index.
    """

    def __init__(self, policy: AdaGrad, total_length: int, block_size: int):
        if total_length < 0:
            raise ValueError(
                f"total_length should be >= 0 but is: {total_length}"
            )
        if block_size <= 0:
            raise ValueError(f"block_size should be > 0 but is: {block_size}")
        self.policy = policy
        self.total_length = total_length
        self.block_size = block_size

        num_blocks = math.ceil(total_length / block_size)
        self.blocks: List[DenseKernelBlock] = []
        for i, (start, end) in enumerate(self._spans(num_blocks)):
            block = DenseKernelBlock(
                policy, end - start, _block_generator(policy, i)
            )
            block.get(i)
            self.blocks.append(block)

    def _spans(self, num_blocks: int) -> List[Tuple[int, int]]:
        return [
            (i * self.block_size, min((i + 1) * self.block_size, self.total_length))
            for i in range(num_blocks)
        ]

    @property
    def spans(self) -> List[Tuple[int, int]]:
        return self._spans(len(self.blocks))

    def apply(self, grad: GradLike) -> None:
        grad = torch.as_tensor(grad, dtype=torch.float32).reshape(-1)
        if grad.numel() != self.total_length:
            raise ShapeMismatchError(
                self.total_length, grad.numel(), "DenseKernel.apply"
            )
        for i, (start, end) in enumerate(self.spans):
            self.blocks[i].apply(i, grad[start:end])

    def weight(self) -> Tensor:
        if not self.blocks:
            return torch.zeros(0, dtype=torch.float32)
        return torch.cat([b.get(i).weight for i, b in enumerate(self.blocks)])

    def set_weight(self, data: bytes) -> None:
        expected = self.total_length * FLOAT_SIZE
        if len(data) != expected:
            raise SizeMismatchError(expected, len(data), "DenseKernel.set_weight")
        for i, (start, end) in enumerate(self.spans):
            self.blocks[i].set_weight(
                i, data[start * FLOAT_SIZE : end * FLOAT_SIZE]
            )

    def data_size(self) -> int:
        return sum(b.data_size() for b in self.blocks)

    def dump(self, block_id: int, sink: ByteSink) -> None:
        self.blocks[block_id].dump(sink)

    def load(self, block_id: int, source: ByteSource) -> int:
        return self.blocks[block_id].load(source)
