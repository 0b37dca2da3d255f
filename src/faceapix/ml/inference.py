"""Thread-pool runner for network forward passes.

Architecture:
    network.forward -> per-network lock -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> session.run

``InferencePool.run`` has the network runner signature ``runner(func, *args)``.
The service hands it to every network, so passes of different networks run
in parallel threads while each network still serializes its own passes.
Calls beyond the semaphore limit wait up to ``timeout`` seconds and then
raise ``TimeoutError``, which the API reports as 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from faceapix.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Bounded executor for session calls, with queue statistics."""

    def __init__(self, max_concurrent: int, *, timeout: float = SEMAPHORE_TIMEOUT_SECONDS) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent,
            thread_name_prefix="faceapix-inference",
        )
        self._counter_lock = threading.Lock()
        self._active_count = 0
        self._queue_depth = 0
        self._completed_count = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> InferencePool:
        return cls(settings.max_concurrent)

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a pool thread once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within :attr:`timeout` seconds.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.timeout)
        except TimeoutError:
            logger.warning("Inference queue full, gave up after %.1fs", self.timeout)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1
                self._completed_count += 1

    @property
    def active_count(self) -> int:
        """Number of session calls currently running."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of session calls waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    @property
    def completed_count(self) -> int:
        with self._counter_lock:
            return self._completed_count

    def shutdown(self) -> None:
        """Wait for running calls and stop the worker threads."""
        self._executor.shutdown(wait=True)
