"""
Copyright (c) 2025 Ayoub Ghriss and contributors
Licensed under CC BY-NC 4.0 (see LICENSE or https://creativecommons.org/licenses/by-nc/4.0/)
Non-commercial use only; contact us for commercial licensing.
"""

from typing import Optional


class PSKernelError(Exception):
    pass


class SizeMismatchError(PSKernelError):
    """Raised when a raw byte buffer does not match the expected size."""

    def __init__(self, expected: int, got: int, context: str = ""):
        self.expected = expected
        self.got = got
        msg = f"Size mismatch: expected {expected} bytes, got {got}"
        super().__init__(f"{context}: {msg}" if context else msg)


class ShapeMismatchError(PSKernelError):
    """Raised when a gradient does not match the value's length."""

    def __init__(self, expected: int, got: int, context: str = ""):
        self.expected = expected
        self.got = got
        msg = f"Shape mismatch: expected length {expected}, got {got}"
        super().__init__(f"{context}: {msg}" if context else msg)


class DecodeError(PSKernelError):
    """Raised when a buffer cannot be decoded into a value or block."""

    pass


class UnsupportedModeError(PSKernelError):
    pass


class ConversionError(PSKernelError):
    """Raised when the offline converter fails on a given file."""

    def __init__(self, path: str, reason: str, cause: Optional[BaseException] = None):
        self.path = path
        super().__init__(f"[{path}] {reason}")
        if cause is not None:
            self.__cause__ = cause
