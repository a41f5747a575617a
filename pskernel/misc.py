"""
Copyright (c) 2025 Ayoub Ghriss and contributors
Licensed under CC BY-NC 4.0 (see LICENSE or https://creativecommons.org/licenses/by-nc/4.0/)
Non-commercial use only; contact us for commercial licensing.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Optional

logger = logging.getLogger(__name__)


@dataclass
class Timing:
    """Elapsed seconds of a named block, filled in when the block exits."""

    name: str
    seconds: float = 0.0

    def __str__(self) -> str:
        if self.seconds < 1e-3:
            return f"{self.name} took: {self.seconds * 1e6:.2f}us"
        elif self.seconds < 1.0:
            return f"{self.name} took: {self.seconds * 1e3:.2f}ms"
        return f"{self.name} took: {self.seconds:.2f}s"


@contextmanager
def measure(
    name: str, verbose: bool = True, log: Optional[logging.Logger] = None
) -> Generator[Timing, None, None]:
    """
    Time the enclosed block.

    Args:
        name (str): Label of the measured block.
        verbose (bool): Log the elapsed time at INFO level on exit.
        log (logging.Logger): Logger to report to, defaults to this module's.
    """
    start = time.perf_counter()
    timing = Timing(name)
    try:
        yield timing
    finally:
        timing.seconds = time.perf_counter() - start
        if verbose:
            (log or logger).info("%s", timing)
