"""
Copyright (c) 2025 Ayoub Ghriss and contributors
Licensed under CC BY-NC 4.0 (see LICENSE or https://creativecommons.org/licenses/by-nc/4.0/)
Non-commercial use only; contact us for commercial licensing.

Binary primitives shared by value, block and dump encodings.

All scalars and float runs are little-endian. Lengths are never embedded by
these primitives: the caller knows how many floats to read from the value
it decodes into.

Classes
-------
ByteSink   : append-only encoder over a growable buffer.
ByteSource : bounds-checked cursor over an immutable buffer.
"""

import struct
from typing import Union

import numpy as np
import torch
from torch import Tensor

from pskernel.errors import DecodeError


FLOAT_SIZE = 4
F32 = np.dtype("<f4")

_I32 = struct.Struct("<i")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_F32 = struct.Struct("<f")

Buffer = Union[bytes, bytearray, memoryview]


class ByteSink:
    def __init__(self):
        self._buf = bytearray()

    def __len__(self) -> int:
        return len(self._buf)

    def append(self, data: Buffer) -> None:
        self._buf += data

    def write_i32(self, value: int) -> None:
        self._buf += _I32.pack(value)

    def write_u32(self, value: int) -> None:
        self._buf += _U32.pack(value)

    def write_u64(self, value: int) -> None:
        self._buf += _U64.pack(value)

    def write_f32(self, value: float) -> None:
        self._buf += _F32.pack(value)

    def write_floats(self, values: Tensor) -> None:
        """Append ``values`` as a raw run of float32."""
        arr = values.detach().cpu().contiguous().numpy()
        self._buf += arr.astype(F32, copy=False).tobytes()

    def getvalue(self) -> bytes:
        return bytes(self._buf)


class ByteSource:
    def __init__(self, data: Buffer):
        self._view = memoryview(bytes(data))
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._view) - self._pos

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0

    @property
    def position(self) -> int:
        return self._pos

    def read(self, n: int) -> bytes:
        if n < 0:
            raise ValueError(f"cannot read a negative number of bytes: {n}")
        if n > self.remaining:
            raise DecodeError(
                f"Short read at offset {self._pos}: "
                f"need {n} bytes, {self.remaining} left"
            )
        out = self._view[self._pos : self._pos + n].tobytes()
        self._pos += n
        return out

    def skip(self, n: int) -> None:
        self.read(n)

    def read_i32(self) -> int:
        return _I32.unpack(self.read(_I32.size))[0]

    def read_u32(self) -> int:
        return _U32.unpack(self.read(_U32.size))[0]

    def read_u64(self) -> int:
        return _U64.unpack(self.read(_U64.size))[0]

    def read_f32(self) -> float:
        return _F32.unpack(self.read(_F32.size))[0]

    def read_floats(self, count: int) -> Tensor:
        """Read ``count`` float32 values into a fresh tensor."""
        raw = self.read(count * FLOAT_SIZE)
        arr = np.frombuffer(raw, dtype=F32, count=count).astype(np.float32)
        return torch.from_numpy(arr)
