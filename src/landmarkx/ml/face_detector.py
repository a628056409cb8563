"""Face detection: BlazeFace output decoding and non-max suppression.

The detector consumes a (1, H, W, 3) float batch in image space, runs the
ONNX model at its fixed input size, and returns one :class:`RawDetection`
per surviving candidate together with the (x, y) factor that maps model
space back to image space.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from landmarkx.errors import DetectorError, InputShapeError
from landmarkx.ml.box import Box, ScaleFactor
from landmarkx.ml.inference import run_session
from landmarkx.ml.preprocessing import prepare_for_detection
from landmarkx.ml.tensors import Tensor

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from landmarkx.ml.inference import InferencePool

logger = logging.getLogger(__name__)

NUM_LANDMARKS = 6
ANCHOR_STRIDES = (8, 16)
ANCHORS_PER_CELL = (2, 6)
SCORE_CLIP = 100.0


@dataclass(frozen=True)
class RawDetection:
    """One face candidate in model space.

    ``box``, ``landmarks`` and ``probability`` are tracked tensors owned by
    whoever receives the detection; ``anchor`` is plain data.
    """

    box: Box
    anchor: tuple[float, float]
    landmarks: Tensor
    probability: Tensor

    def dispose(self) -> None:
        self.box.dispose()
        self.landmarks.dispose()
        self.probability.dispose()


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    async def get_bounding_boxes(
        self, batch: Tensor, retain_handles: bool
    ) -> tuple[list[RawDetection], ScaleFactor]:
        """Detect faces in a (1, H, W, 3) float batch.

        Args:
            batch: Image batch in image-space pixels. Not disposed by the detector.
            retain_handles: Whether the caller intends to keep buffers alive past the call.

        Returns:
            Detections in model space and the model-to-image scale factor.
        """
        ...


# ---------------------------------------------------------------------------
# Decoding helpers
# ---------------------------------------------------------------------------


def generate_anchors(
    width: int,
    height: int,
    strides: Sequence[int] = ANCHOR_STRIDES,
    anchors_per_cell: Sequence[int] = ANCHORS_PER_CELL,
) -> NDArray[np.float32]:
    """Return anchor centers in model-space pixels, shape (num_anchors, 2)."""
    centers: list[tuple[float, float]] = []
    for stride, count in zip(strides, anchors_per_cell, strict=True):
        grid_rows = (height + stride - 1) // stride
        grid_cols = (width + stride - 1) // stride
        for grid_y in range(grid_rows):
            anchor_y = stride * (grid_y + 0.5)
            for grid_x in range(grid_cols):
                anchor_x = stride * (grid_x + 0.5)
                centers.extend((anchor_x, anchor_y) for _ in range(count))
    return np.array(centers, dtype=np.float32).reshape(-1, 2)


def decode_bounds(prediction: NDArray[np.float32], anchors: NDArray[np.float32]) -> NDArray[np.float32]:
    """Turn center/size regressors (columns 1-4) into ``[x1, y1, x2, y2]`` boxes."""
    centers = prediction[:, 1:3] + anchors
    half_sizes = prediction[:, 3:5] / 2
    return np.concatenate([centers - half_sizes, centers + half_sizes], axis=1).astype(np.float32)


def sigmoid(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    clipped = np.clip(logits.astype(np.float64), -SCORE_CLIP, SCORE_CLIP)
    return (1.0 / (1.0 + np.exp(-clipped))).astype(np.float32)


def non_max_suppression(
    boxes: NDArray[np.float32],
    scores: NDArray[np.float32],
    max_detections: int,
    iou_threshold: float,
    score_threshold: float,
) -> list[int]:
    """Greedy NMS. Expects boxes shape (N, 4) in xyxy and scores shape (N,).

    Candidates must score strictly above ``score_threshold``; a candidate is
    dropped when its IoU with an already kept box exceeds ``iou_threshold``.
    Returns kept indices in descending score order.
    """
    if max_detections <= 0 or boxes.size == 0:
        return []

    x1 = np.minimum(boxes[:, 0], boxes[:, 2])
    y1 = np.minimum(boxes[:, 1], boxes[:, 3])
    x2 = np.maximum(boxes[:, 0], boxes[:, 2])
    y2 = np.maximum(boxes[:, 1], boxes[:, 3])
    areas = (x2 - x1) * (y2 - y1)

    candidates = np.flatnonzero(scores > score_threshold)
    order = candidates[np.argsort(-scores[candidates], kind="stable")]
    keep: list[int] = []

    while order.size > 0 and len(keep) < max_detections:
        i = int(order[0])
        keep.append(i)
        rest = order[1:]

        w = np.maximum(0.0, np.minimum(x2[i], x2[rest]) - np.maximum(x1[i], x1[rest]))
        h = np.maximum(0.0, np.minimum(y2[i], y2[rest]) - np.maximum(y1[i], y1[rest]))
        inter = w * h
        union = areas[i] + areas[rest] - inter
        iou = np.where(union > 0, inter / np.maximum(union, 1e-12), 0.0)

        order = rest[iou <= iou_threshold]

    return keep


# ---------------------------------------------------------------------------
# BlazeFace
# ---------------------------------------------------------------------------


class BlazeFaceDetector:
    """Runs a BlazeFace ONNX session and decodes its outputs."""

    def __init__(
        self,
        session: Any,
        input_width: int,
        input_height: int,
        max_detections: int,
        iou_threshold: float,
        score_threshold: float,
        *,
        pool: InferencePool | None = None,
    ) -> None:
        self._session = session
        self.input_width = input_width
        self.input_height = input_height
        self.max_detections = max_detections
        self.iou_threshold = iou_threshold
        self.score_threshold = score_threshold
        self._pool = pool

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        shape = list(model_input.shape)
        self._channels_first = len(shape) == 4 and shape[1] == 3
        self._anchors = generate_anchors(input_width, input_height)

    async def get_bounding_boxes(
        self, batch: Tensor, retain_handles: bool
    ) -> tuple[list[RawDetection], ScaleFactor]:
        """Detect faces in a (1, H, W, 3) batch.

        Every returned buffer is tracked regardless of ``retain_handles``;
        the receiver decides whether to dispose them immediately.
        """
        if batch.rank != 4 or batch.shape[0] != 1 or batch.shape[3] != 3:
            raise InputShapeError(f"Expected a (1, height, width, 3) batch, got shape {batch.shape}")

        data = batch.numpy()
        image_height, image_width = data.shape[1], data.shape[2]
        model_input = prepare_for_detection(data, self.input_width, self.input_height)
        if self._channels_first:
            model_input = np.ascontiguousarray(model_input.transpose(0, 3, 1, 2))

        outputs = await self._run(model_input)
        prediction = self._merge_outputs(outputs)

        boxes = decode_bounds(prediction, self._anchors)
        scores = sigmoid(prediction[:, 0])
        keep = non_max_suppression(
            boxes, scores, self.max_detections, self.iou_threshold, self.score_threshold
        )
        scale_factor: ScaleFactor = (image_width / self.input_width, image_height / self.input_height)
        logger.debug(
            "Kept %d of %d candidates (retain_handles=%s, scale=%s)",
            len(keep),
            len(scores),
            retain_handles,
            scale_factor,
        )

        detections = [
            RawDetection(
                box=Box(Tensor(boxes[i : i + 1])),
                anchor=(float(self._anchors[i, 0]), float(self._anchors[i, 1])),
                landmarks=Tensor(prediction[i, 5 : 5 + 2 * NUM_LANDMARKS].reshape(NUM_LANDMARKS, 2)),
                probability=Tensor(scores[i]),
            )
            for i in keep
        ]
        return detections, scale_factor

    # -- Internal -----------------------------------------------------------

    async def _run(self, model_input: NDArray[np.float32]) -> list[NDArray[np.float32]]:
        feeds = {self._input_name: model_input}
        if self._pool is not None:
            return await self._pool.run_session(self._session, feeds)
        return await asyncio.to_thread(run_session, self._session, feeds)

    def _merge_outputs(self, outputs: list[NDArray[np.float32]]) -> NDArray[np.float32]:
        """Bring model outputs into one (num_anchors, 17) array: score logit, 4 box, 12 landmark values.

        Accepts either a single combined output or separate regressor (16) and
        classifier (1) outputs.
        """
        num_anchors = len(self._anchors)
        width = 1 + 4 + 2 * NUM_LANDMARKS
        squeezed = [o.reshape(num_anchors, -1) if o.size and o.size % num_anchors == 0 else o for o in outputs]

        if len(squeezed) == 1 and squeezed[0].shape == (num_anchors, width):
            return squeezed[0]
        if len(squeezed) == 2:
            by_width = {o.shape[-1]: o for o in squeezed if o.ndim == 2 and o.shape[0] == num_anchors}
            regressors, logits = by_width.get(width - 1), by_width.get(1)
            if regressors is not None and logits is not None:
                return np.concatenate([logits, regressors], axis=1)

        shapes = [o.shape for o in outputs]
        raise DetectorError(f"Unexpected model outputs {shapes} for {num_anchors} anchors")
