"""Tests for bounded detector session execution."""

from __future__ import annotations

import asyncio
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from landmarkx.config import Settings
from landmarkx.ml.face_detector import BlazeFaceDetector, generate_anchors
from landmarkx.ml.inference import InferencePool, PoolStats, run_session
from landmarkx.ml.tensors import Tensor

FEEDS = {"input": np.zeros((1, 4, 4, 3), dtype=np.float32)}


def _session(outputs: list[object] | None = None) -> MagicMock:
    session = MagicMock()
    session.run.return_value = outputs if outputs is not None else [np.zeros((1, 2), dtype=np.float64)]
    return session


# ---------------------------------------------------------------------------
# run_session
# ---------------------------------------------------------------------------


class TestRunSession:
    def test_requests_all_outputs_and_casts_to_float32(self) -> None:
        session = _session([[[1, 2]], np.ones((3,), dtype=np.float64)])

        outputs = run_session(session, FEEDS)

        session.run.assert_called_once()
        assert session.run.call_args.args[0] is None
        assert session.run.call_args.args[1]["input"] is FEEDS["input"]
        assert [o.dtype for o in outputs] == [np.float32, np.float32]
        assert outputs[0].tolist() == [[1.0, 2.0]]


# ---------------------------------------------------------------------------
# InferencePool
# ---------------------------------------------------------------------------


class TestInferencePool:
    async def test_runs_session_in_worker_thread(self) -> None:
        threads: list[str] = []
        session = _session()
        session.run.side_effect = lambda *_: threads.append(threading.current_thread().name) or [[0.5]]
        pool = InferencePool(Settings(max_concurrent=1))
        try:
            (output,) = await pool.run_session(session, FEEDS)
        finally:
            pool.shutdown()

        assert threads[0].startswith("onnx-inference")
        assert output.dtype == np.float32

    async def test_stats_after_concurrent_runs(self) -> None:
        pool = InferencePool(Settings(max_concurrent=2))
        try:
            await asyncio.gather(*(pool.run_session(_session(), FEEDS) for _ in range(5)))
            assert pool.stats() == PoolStats(active=0, waiting=0, finished=5, rejected=0)
        finally:
            pool.shutdown()

    async def test_session_errors_propagate_and_release_slot(self) -> None:
        failing = _session()
        failing.run.side_effect = RuntimeError("boom")
        pool = InferencePool(Settings(max_concurrent=1))
        try:
            with pytest.raises(RuntimeError, match="boom"):
                await pool.run_session(failing, FEEDS)
            assert len(await pool.run_session(_session(), FEEDS)) == 1
            assert pool.stats().finished == 2
        finally:
            pool.shutdown()

    async def test_times_out_when_saturated(self) -> None:
        release = threading.Event()
        blocking = _session()
        blocking.run.side_effect = lambda *_: release.wait(5) and [[0.0]]
        pool = InferencePool(Settings(max_concurrent=1))
        try:
            busy = asyncio.create_task(pool.run_session(blocking, FEEDS))
            await asyncio.sleep(0.05)
            assert pool.stats().active == 1

            with patch("landmarkx.ml.inference.SEMAPHORE_TIMEOUT_SECONDS", 0.05), pytest.raises(TimeoutError):
                await pool.run_session(_session(), FEEDS)

            stats = pool.stats()
            assert stats.waiting == 0
            assert stats.rejected == 1
        finally:
            release.set()
            await busy
            pool.shutdown()

    async def test_detector_runs_through_pool(self) -> None:
        prediction = np.zeros((1, len(generate_anchors(128, 128)), 17), dtype=np.float32)
        prediction[..., 0] = -20.0
        session = _session([prediction])
        session.get_inputs.return_value = [SimpleNamespace(name="input", shape=[1, 128, 128, 3])]
        pool = InferencePool(Settings(max_concurrent=1))
        detector = BlazeFaceDetector(session, 128, 128, 10, 0.3, 0.75, pool=pool)
        try:
            with Tensor(np.zeros((1, 128, 128, 3), dtype=np.float32)) as batch:
                detections, _ = await detector.get_bounding_boxes(batch, False)
        finally:
            pool.shutdown()

        assert detections == []
        assert pool.stats().finished == 1
