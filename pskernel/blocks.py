"""
Copyright (c) 2025 Ayoub Ghriss and contributors
Licensed under CC BY-NC 4.0 (see LICENSE or https://creativecommons.org/licenses/by-nc/4.0/)
Non-commercial use only; contact us for commercial licensing.

Classes
-------
KernelBlock       : abstract key -> value container owned by one shard.
DenseKernelBlock  : block-index -> DenseValue, every value of length L.
SparseKernelBlock : feature id -> SparseValue, every value of dimension dim.

A block has no locking of its own. The shard that owns it must make sure
that two updates of the same key never run at the same time, and that
``dump`` sees a quiesced block.

Dump layout: ``[int32 width]`` followed by ``[uint64 key][value bytes]``
records until the end of the buffer, where width is L for dense blocks and
dim for sparse ones.
"""

import logging
from abc import ABC, abstractmethod
from typing import (
    Dict,
    Generic,
    Iterator,
    List,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

import torch

from pskernel.codec import ByteSink, ByteSource
from pskernel.errors import DecodeError
from pskernel.optimizers import AdaGrad
from pskernel.values import DenseValue, GradInfo, GradLike, SparseValue

logger = logging.getLogger(__name__)

PolicyT = TypeVar("PolicyT", bound=AdaGrad)
ValueT = TypeVar("ValueT", DenseValue, SparseValue)

MAX_KEY = (1 << 64) - 1


class KernelBlock(ABC, Generic[PolicyT, ValueT]):
    def __init__(
        self, policy: PolicyT, generator: Optional[torch.Generator] = None
    ):
        self.policy = policy
        self._values: Dict[int, ValueT] = {}
        if generator is None:
            generator = policy.make_generator()
        self._generator = generator

    @property
    @abstractmethod
    def width(self) -> int:
        """Float count per value weight (L or dim), written in the dump header."""
        pass

    @abstractmethod
    def _new_value(self) -> ValueT:
        pass

    @abstractmethod
    def _check_key(self, key: int) -> None:
        pass

    def get(self, key: int) -> ValueT:
        """Return the value of ``key``, creating it on first access."""
        value = self._values.get(key)
        if value is None:
            self._check_key(key)
            value = self._new_value()
            self._values[key] = value
        return value

    def __contains__(self, key: int) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[int]:
        return iter(self._values)

    def items(self) -> Iterator[Tuple[int, ValueT]]:
        return iter(self._values.items())

    def evict(self, key: int) -> bool:
        """Drop ``key``; True if an owned weight buffer was released."""
        value = self._values.pop(key)
        released = self._release(value)
        logger.debug("evicted key %d (released=%s)", key, released)
        return released

    def clear(self) -> None:
        for value in self._values.values():
            self._release(value)
        self._values.clear()

    @staticmethod
    def _release(value: ValueT) -> bool:
        if isinstance(value, SparseValue):
            return value.release()
        return False

    def data_size(self) -> int:
        """Bytes written by ``dump``."""
        return 4 + sum(8 + v.data_size() for v in self._values.values())

    def dump(self, sink: ByteSink) -> None:
        sink.write_i32(self.width)
        for key, value in self._values.items():
            sink.write_u64(key)
            value.serialized(sink)

    def load(self, source: ByteSource) -> int:
        """Restore values from a dump; returns the number of records read.

        Nothing is committed unless the whole buffer decodes.
        """
        width = source.read_i32()
        if width != self.width:
            raise DecodeError(
                f"{type(self).__name__}: dump width {width} does not match "
                f"block width {self.width}"
            )
        loaded: Dict[int, ValueT] = {}
        try:
            while not source.exhausted:
                key = source.read_u64()
                if key in loaded:
                    raise DecodeError(
                        f"{type(self).__name__}: key {key} appears twice in dump"
                    )
                value = self._new_value()
                loaded[key] = value
                value.deserialized(source)
        except DecodeError:
            for value in loaded.values():
                self._release(value)
            raise

        for key, value in loaded.items():
            old = self._values.get(key)
            if old is not None:
                self._release(old)
            self._values[key] = value
        logger.debug("%s loaded %d records", type(self).__name__, len(loaded))
        return len(loaded)


class DenseKernelBlock(KernelBlock[AdaGrad, DenseValue]):
    def __init__(
        self,
        policy: AdaGrad,
        length: int,
        generator: Optional[torch.Generator] = None,
    ):
        if length < 0:
            raise ValueError(f"length should be >= 0 but is: {length}")
        super().__init__(policy, generator)
        self.length = length

    @property
    def width(self) -> int:
        return self.length

    def _new_value(self) -> DenseValue:
        return DenseValue(self.policy, self.length, self._generator)

    def _check_key(self, key: int) -> None:
        if not 0 <= key <= MAX_KEY:
            raise ValueError(
                f"block index should be in [0, {MAX_KEY}] but is: {key}"
            )

    def apply(self, index: int, grad: GradLike) -> DenseValue:
        value = self.get(index)
        value.apply(self.policy, grad)
        return value

    def set_weight(self, index: int, data: bytes) -> None:
        self.get(index).set_weight(data)


class SparseKernelBlock(KernelBlock[AdaGrad, SparseValue]):
    def __init__(
        self,
        policy: AdaGrad,
        dim: int,
        generator: Optional[torch.Generator] = None,
    ):
        if dim < 0:
            raise ValueError(f"dim should be >= 0 but is: {dim}")
        super().__init__(policy, generator)
        self.dim = dim

    @property
    def width(self) -> int:
        return self.dim

    def _new_value(self) -> SparseValue:
        return SparseValue(self.dim, self.policy, self._generator)

    def _check_key(self, key: int) -> None:
        if not 0 <= key <= MAX_KEY:
            raise ValueError(f"key {key} does not fit in an unsigned 64-bit id")

    def apply(self, key: int, grad_info: Union[GradInfo, GradLike]) -> SparseValue:
        if not isinstance(grad_info, GradInfo):
            grad_info = GradInfo(grad_info)
        value = self.get(key)
        value.apply(self.policy, grad_info)
        return value

    def weight(self, key: int) -> torch.Tensor:
        return self.get(key).weight

    def show_decay(self) -> None:
        for value in self._values.values():
            value.show_decay(self.policy)

    def cold_keys(self, threshold: float) -> List[int]:
        """Keys whose accumulated show fell below ``threshold``."""
        return [k for k, v in self._values.items() if v.show < threshold]
