"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ClassificationService

Model loading and classification are blocking calls, so they run on a
dedicated executor instead of the event loop. With the default
``max_concurrent=1`` they are strictly serialized, which is what the
single shared ONNX session expects. Callers that cannot get a slot
within ``SEMAPHORE_TIMEOUT_SECONDS`` receive ``TimeoutError``; the API
turns that into 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from classitrack.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Bounded executor for blocking classifier calls."""

    def __init__(self, settings: Settings) -> None:
        self._capacity = settings.max_concurrent
        self._semaphore = asyncio.Semaphore(self._capacity)
        self._executor = ThreadPoolExecutor(
            max_workers=self._capacity,
            thread_name_prefix="classitrack-inference",
        )
        self._counter_lock = threading.Lock()
        self._active_count = 0
        self._queue_depth = 0
        self._closed = False

    @property
    def capacity(self) -> int:
        """Maximum number of calls running at once."""
        return self._capacity

    @property
    def active_count(self) -> int:
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Callers currently waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on the inference executor once a slot frees up.

        Raises:
            TimeoutError: If no slot frees up within ``SEMAPHORE_TIMEOUT_SECONDS``.
            RuntimeError: If the pool has been shut down.
        """
        if self._closed:
            raise RuntimeError("Inference pool is shut down")

        await self._acquire_slot()
        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            with self._counter_lock:
                self._active_count -= 1
            self._semaphore.release()

    def shutdown(self) -> None:
        """Wait for running calls to finish and stop the executor. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        logger.debug("Inference pool shut down")

    async def _acquire_slot(self) -> None:
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=SEMAPHORE_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("No inference slot free after %.1fs", SEMAPHORE_TIMEOUT_SECONDS)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1
