"""Tests for the bounded inference executor."""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import patch

import pytest

from classitrack.config import Settings
from classitrack.ml.inference import InferencePool


def _pool(max_concurrent: int = 1) -> InferencePool:
    return InferencePool(Settings(max_concurrent=max_concurrent))


class TestInferencePool:
    async def test_runs_function_off_the_event_loop(self) -> None:
        pool = _pool()
        try:
            thread_name = await pool.run(lambda: threading.current_thread().name)
            assert thread_name.startswith("classitrack-inference")
            assert await pool.run(pow, 2, 10) == 1024
        finally:
            pool.shutdown()

    async def test_single_slot_serializes_calls(self) -> None:
        pool = _pool()
        running = 0
        peak = 0
        lock = threading.Lock()

        def work() -> None:
            nonlocal running, peak
            with lock:
                running += 1
                peak = max(peak, running)
            threading.Event().wait(0.02)
            with lock:
                running -= 1

        try:
            await asyncio.gather(*(pool.run(work) for _ in range(4)))
        finally:
            pool.shutdown()
        assert peak == 1
        assert pool.active_count == 0
        assert pool.queue_depth == 0

    async def test_full_queue_times_out(self) -> None:
        pool = _pool()
        release = threading.Event()
        try:
            blocker = asyncio.ensure_future(pool.run(release.wait, 2.0))
            await asyncio.sleep(0.01)
            with patch("classitrack.ml.inference.SEMAPHORE_TIMEOUT_SECONDS", 0.05), pytest.raises(TimeoutError):
                await pool.run(int)
            assert pool.queue_depth == 0
            release.set()
            assert await blocker is True
        finally:
            release.set()
            pool.shutdown()

    async def test_errors_propagate_and_free_the_slot(self) -> None:
        pool = _pool()

        def boom() -> None:
            raise ValueError("bad tensor")

        try:
            with pytest.raises(ValueError, match="bad tensor"):
                await pool.run(boom)
            assert pool.active_count == 0
            assert await pool.run(int, "7") == 7
        finally:
            pool.shutdown()

    async def test_shutdown_is_idempotent_and_final(self) -> None:
        pool = _pool(max_concurrent=2)
        assert pool.capacity == 2
        pool.shutdown()
        pool.shutdown()
        with pytest.raises(RuntimeError, match="shut down"):
            await pool.run(int)
