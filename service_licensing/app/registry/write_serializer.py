"""
Single-writer execution for registry mutations.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, TypeVar

from shared.errors import PersistenceError
from shared.logging import get_logger

T = TypeVar("T")


class WriteSerializer:
    """Runs submitted tasks strictly one at a time, in submission order.

    Tasks execute on a dedicated one-thread executor, so blocking file I/O
    never stalls the event loop and no two mutations ever interleave. A
    failing task raises in its submitter only; later tasks still run.

    A timeout fails the awaiting caller, but the task already handed to the
    writer thread still runs to completion before the next one starts.
    """

    def __init__(self, name: str = "registry-writer", default_timeout: Optional[float] = None):
        self.name = name
        self.default_timeout = default_timeout
        self.logger = get_logger(f"licensing.{name}")
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)

    async def submit(self, task: Callable[[], T], timeout: Optional[float] = None) -> T:
        """Queue ``task`` and wait for its result, re-raising its exception."""
        effective_timeout = timeout if timeout is not None else self.default_timeout
        future = asyncio.wrap_future(self._executor.submit(task))
        try:
            if effective_timeout is None:
                return await future
            return await asyncio.wait_for(asyncio.shield(future), effective_timeout)
        except asyncio.TimeoutError as e:
            self.logger.error("Registry write timed out", timeout=effective_timeout)
            raise PersistenceError(
                "Registry write timed out",
                details={"timeout_seconds": effective_timeout},
            ) from e

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
