"""Bounded waits for blocking upstream calls."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from loguru import logger

from clinicase.core.errors import UpstreamTimeoutError

T = TypeVar("T")

# Shared pool; abandoned calls keep running until the client's own timeout fires.
_executor = ThreadPoolExecutor(max_workers=32, thread_name_prefix="clinicase-upstream")


@dataclass
class Deadline:
    """
    Monotonic deadline for one exchange.
    """

    timeout: float
    started: float = field(default_factory=time.monotonic)

    def remaining(self) -> float:
        """
        Seconds left before the deadline, never negative.

        Returns:
            float: Remaining seconds.
        """
        return max(0.0, self.started + self.timeout - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def cap(self, sub_timeout: float) -> float:
        """
        Bound a nested timeout by what is left of this deadline.

        Args:
            sub_timeout (float): The nested timeout in seconds.

        Returns:
            float: ``min(sub_timeout, remaining())``.
        """
        return min(sub_timeout, self.remaining())


def call_with_timeout(fn: Callable[..., T], timeout: float, *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking call and wait for its result up to ``timeout`` seconds.

    Args:
        fn (Callable[..., T]): The callable to run.
        timeout (float): Seconds to wait for the result.
        *args (Any): Positional arguments for ``fn``.
        **kwargs (Any): Keyword arguments for ``fn``.

    Returns:
        T: The value returned by ``fn``.

    Raises:
        UpstreamTimeoutError: If the result is not available in time.
        Exception: Any exception raised by ``fn`` propagates unchanged.
    """
    if timeout <= 0:
        raise UpstreamTimeoutError(f"No time left to call {getattr(fn, '__name__', fn)}")
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as e:
        future.cancel()
        name = getattr(fn, "__name__", repr(fn))
        logger.warning("Upstream call {} timed out after {:.1f}s", name, timeout)
        raise UpstreamTimeoutError(f"{name} timed out after {timeout:.1f}s") from e
