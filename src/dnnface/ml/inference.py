"""Decode concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> FaceDetector.detect

Decoding is synchronous numpy work, and the detector's priors are read-only,
so N calls can share one detector. A request that cannot get a slot within
``Settings.queue_timeout`` seconds is rejected (the API answers 503).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from dnnface.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounded pool of decode threads with a waiting queue in front."""

    def __init__(self, settings: Settings) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._queue_timeout = settings.queue_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="face-decode",
        )
        self._active = 0
        self._waiting = 0
        self._rejected = 0
        self._lock = threading.Lock()

    async def _acquire_slot(self) -> None:
        with self._lock:
            self._waiting += 1
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            with self._lock:
                self._rejected += 1
            logger.warning("No decode slot free after %.2fs, rejecting request", self._queue_timeout)
            raise
        finally:
            with self._lock:
                self._waiting -= 1

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a decode thread once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        await self._acquire_slot()
        with self._lock:
            self._active += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._slots.release()
            with self._lock:
                self._active -= 1

    @property
    def active_count(self) -> int:
        """Decode calls currently running."""
        with self._lock:
            return self._active

    @property
    def queue_depth(self) -> int:
        """Requests waiting for a slot."""
        with self._lock:
            return self._waiting

    @property
    def rejected_count(self) -> int:
        """Requests turned away because the queue timed out."""
        with self._lock:
            return self._rejected

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
