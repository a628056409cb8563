"""Bounded execution of detector sessions.

Architecture:
    detector (async) -> slot (asyncio.Semaphore, N) -> worker thread (N) -> session.run

A detector call that cannot get a slot within SEMAPHORE_TIMEOUT_SECONDS fails
with TimeoutError, which the HTTP layer turns into a 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Mapping

    from numpy.typing import NDArray

    from landmarkx.config import Settings

logger = logging.getLogger(__name__)

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


def run_session(session: Any, feeds: Mapping[str, NDArray[np.float32]]) -> list[NDArray[np.float32]]:
    """Run every output of ``session`` on ``feeds`` and return them as float32 arrays. Blocking."""
    started = time.perf_counter()
    outputs = session.run(None, dict(feeds))
    logger.debug("session.run took %.1f ms", (time.perf_counter() - started) * 1000)
    return [np.asarray(output, dtype=np.float32) for output in outputs]


@dataclass(frozen=True)
class PoolStats:
    """Snapshot of detector runs passing through an :class:`InferencePool`."""

    active: int
    waiting: int
    finished: int
    rejected: int


class InferencePool:
    """Caps concurrent detector runs and keeps ``session.run`` off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._lock = threading.Lock()
        self._active = 0
        self._waiting = 0
        self._finished = 0
        self._rejected = 0

    async def run_session(self, session: Any, feeds: Mapping[str, NDArray[np.float32]]) -> list[NDArray[np.float32]]:
        """Run ``session`` on ``feeds`` in a worker thread once a slot is free.

        Raises:
            TimeoutError: If every slot stays busy for SEMAPHORE_TIMEOUT_SECONDS.
        """
        await self._acquire_slot()
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, run_session, session, feeds)
        finally:
            self._release_slot()

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                active=self._active,
                waiting=self._waiting,
                finished=self._finished,
                rejected=self._rejected,
            )

    def shutdown(self) -> None:
        """Wait for running sessions and stop the worker threads."""
        self._executor.shutdown(wait=True)

    # -- Internal -----------------------------------------------------------

    async def _acquire_slot(self) -> None:
        with self._lock:
            self._waiting += 1
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=SEMAPHORE_TIMEOUT_SECONDS)
        except TimeoutError:
            with self._lock:
                self._rejected += 1
                active = self._active
            logger.warning("No detector slot free after %.1fs (%d running)", SEMAPHORE_TIMEOUT_SECONDS, active)
            raise
        finally:
            with self._lock:
                self._waiting -= 1
        with self._lock:
            self._active += 1

    def _release_slot(self) -> None:
        self._slots.release()
        with self._lock:
            self._active -= 1
            self._finished += 1
