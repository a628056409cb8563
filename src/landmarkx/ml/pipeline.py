"""Face landmark pipeline: model loading and result construction.

``load`` fetches the detection model and binds it to a
:class:`DetectionConfig`. ``FaceLandmarkPipeline.estimate_face`` turns the
detector's model-space output into image-space faces in one of two forms:

* :class:`Face` (default): plain floats. Every buffer touched on the way is
  released before the call returns.
* :class:`RetainedFace` (``retain_handles=True``): live tensors for callers
  that keep computing on them. The caller owns those four buffers and must
  dispose them; every other intermediate is still released by the pipeline.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, overload

import numpy as np

from landmarkx.config import get_settings, resolve_detection_config
from landmarkx.ml.box import scale_box
from landmarkx.ml.face_detector import BlazeFaceDetector
from landmarkx.ml.model_manager import HubModelProvider
from landmarkx.ml.preprocessing import check_image_tensor, from_pixels
from landmarkx.ml.tensors import Tensor, TensorScope, memory

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from numpy.typing import ArrayLike

    from landmarkx.config import DetectionConfig, Settings
    from landmarkx.ml.box import ScaleFactor
    from landmarkx.ml.face_detector import FaceDetector, RawDetection
    from landmarkx.ml.inference import InferencePool
    from landmarkx.ml.model_manager import ModelProvider

logger = logging.getLogger(__name__)

Point = tuple[float, float]


async def _gather_all(*aws: Awaitable[Any]) -> list[Any]:
    """Await all of ``aws`` concurrently, then raise the first error if any failed."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


def _to_image_space(point: Sequence[float], anchor: Point, scale_factor: ScaleFactor) -> Point:
    """Return ``(point + anchor) * scale_factor``, rounding to float32 after each step like the tensor ops do."""
    x = (np.float32(point[0]) + np.float32(anchor[0])) * np.float32(scale_factor[0])
    y = (np.float32(point[1]) + np.float32(anchor[1])) * np.float32(scale_factor[1])
    return float(x), float(y)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Face:
    """A detected face in image-space pixels."""

    top_left: Point
    bottom_right: Point
    landmarks: tuple[Point, ...]
    probability: float


@dataclass(frozen=True)
class RetainedFace:
    """A detected face whose fields are live tensors owned by the caller."""

    top_left: Tensor
    bottom_right: Tensor
    landmarks: Tensor
    probability: Tensor

    def dispose(self) -> None:
        """Release all four buffers."""
        for tensor in (self.top_left, self.bottom_right, self.landmarks, self.probability):
            tensor.dispose()

    async def resolve(self) -> Face:
        """Read the buffers into a plain :class:`Face`. The buffers stay alive."""
        top_left, bottom_right, landmarks, probability = await _gather_all(
            self.top_left.array(),
            self.bottom_right.array(),
            self.landmarks.array(),
            self.probability.array(),
        )
        return Face(
            top_left=(top_left[0], top_left[1]),
            bottom_right=(bottom_right[0], bottom_right[1]),
            landmarks=tuple((x, y) for x, y in landmarks),
            probability=float(probability),
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class FaceLandmarkPipeline:
    """Runs a detector and rescales its output into image coordinates."""

    def __init__(
        self,
        detector: FaceDetector,
        config: DetectionConfig,
        *,
        on_tensor_count: Callable[[int], None] | None = None,
    ) -> None:
        self._detector = detector
        self._config = config
        self._on_tensor_count = on_tensor_count

    @property
    def config(self) -> DetectionConfig:
        return self._config

    @overload
    async def estimate_face(self, image: Tensor | ArrayLike, retain_handles: Literal[False] = ...) -> list[Face]: ...

    @overload
    async def estimate_face(self, image: Tensor | ArrayLike, retain_handles: Literal[True]) -> list[RetainedFace]: ...

    async def estimate_face(
        self, image: Tensor | ArrayLike, retain_handles: bool = False
    ) -> list[Face] | list[RetainedFace]:
        """Detect faces and return them in the input image's pixel coordinates.

        Args:
            image: An HxWxC pixel grid, or an HxWx3 tensor. A tensor passed in
                is never disposed by the pipeline.
            retain_handles: Return :class:`RetainedFace` records holding live
                tensors instead of plain :class:`Face` records.

        Returns:
            One entry per detection, in detector order.

        Raises:
            InputShapeError: If the input has the wrong rank or channel count.
        """
        start_tensors = memory().num_tensors

        with TensorScope() as scope:
            if isinstance(image, Tensor):
                check_image_tensor(image)
                source = image
            else:
                source = scope.track(from_pixels(image))
            as_float = scope.track(source.to_float())
            batch = scope.track(as_float.expand_dims(0))
            detections, scale_factor = await self._detector.get_bounding_boxes(batch, retain_handles)

        self._report_tensor_count(memory().num_tensors - start_tensors)

        if retain_handles:
            return self._retain(detections, scale_factor)
        return await self._materialize(detections, scale_factor)

    # -- Retained path ------------------------------------------------------

    def _retain(self, detections: list[RawDetection], scale_factor: ScaleFactor) -> list[RetainedFace]:
        faces: list[RetainedFace] = []
        try:
            for detection in detections:
                faces.append(self._retain_one(detection, scale_factor))
        except BaseException:
            for face in faces:
                face.dispose()
            for detection in detections[len(faces) + 1 :]:
                detection.dispose()
            raise
        return faces

    @staticmethod
    def _retain_one(detection: RawDetection, scale_factor: ScaleFactor) -> RetainedFace:
        with TensorScope() as scope:
            scope.track(detection.box.start_end)
            scope.track(detection.landmarks)
            scope.track(detection.probability)

            scaled = scale_box(detection.box, scale_factor)
            scope.track(scaled.start_end)
            corners = scope.track(scaled.start_end.squeeze())
            top_left = scope.track(corners.slice([0], [2]))
            bottom_right = scope.track(corners.slice([2], [2]))

            shifted = scope.track(detection.landmarks.add(detection.anchor))
            landmarks = scope.track(shifted.mul(scale_factor))

            return RetainedFace(
                top_left=scope.keep(top_left),
                bottom_right=scope.keep(bottom_right),
                landmarks=scope.keep(landmarks),
                probability=scope.keep(detection.probability),
            )

    # -- Materialized path --------------------------------------------------

    async def _materialize(self, detections: list[RawDetection], scale_factor: ScaleFactor) -> list[Face]:
        with TensorScope() as scope:
            for detection in detections:
                scope.track(detection.box.start_end)
                scope.track(detection.landmarks)
                scope.track(detection.probability)

            corners: list[Tensor] = []
            for detection in detections:
                scaled = scale_box(detection.box, scale_factor)
                scope.track(scaled.start_end)
                corners.append(scope.track(scaled.start_end.squeeze()))

            # every resolver finishes before the scope releases what they read
            faces = await _gather_all(
                *(
                    self._resolve_one(detection, box, scale_factor)
                    for detection, box in zip(detections, corners, strict=True)
                )
            )
        return faces

    @staticmethod
    async def _resolve_one(detection: RawDetection, corners: Tensor, scale_factor: ScaleFactor) -> Face:
        landmark_data, box_data, probability = await _gather_all(
            detection.landmarks.array(),
            corners.array(),
            detection.probability.array(),
        )
        return Face(
            top_left=(box_data[0], box_data[1]),
            bottom_right=(box_data[2], box_data[3]),
            landmarks=tuple(_to_image_space(point, detection.anchor, scale_factor) for point in landmark_data),
            probability=float(probability),
        )

    def _report_tensor_count(self, new_tensors: int) -> None:
        logger.debug("num new tensors: %d", new_tensors)
        if self._on_tensor_count is not None:
            self._on_tensor_count(new_tensors)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


async def load(
    config: DetectionConfig | Mapping[str, object] | None = None,
    *,
    settings: Settings | None = None,
    provider: ModelProvider | None = None,
    detector_factory: Callable[..., FaceDetector] | None = None,
    pool: InferencePool | None = None,
    on_tensor_count: Callable[[int], None] | None = None,
) -> FaceLandmarkPipeline:
    """Fetch the detection model and return a ready pipeline.

    Args:
        config: Detection parameters; omitted fields take their defaults.
        settings: Application settings (model name, download directory).
        provider: Where the model artifact comes from. Defaults to the HuggingFace Hub.
        detector_factory: Builds the detector from
            ``(artifact, input_width, input_height, max_detections, iou_threshold, score_threshold)``.
        pool: Inference pool for the default detector's blocking model runs.
        on_tensor_count: Called with the number of new live tensors after each detector call.

    Raises:
        ConfigurationError: If ``config`` is invalid. Raised before anything is fetched.
        ModelLoadError: If the provider cannot deliver the model.
    """
    resolved = resolve_detection_config(config)
    settings = settings if settings is not None else get_settings()
    provider = provider if provider is not None else HubModelProvider(settings)
    factory = detector_factory if detector_factory is not None else functools.partial(BlazeFaceDetector, pool=pool)

    artifact = await provider.fetch_model(settings.detection_model)
    detector = factory(
        artifact,
        resolved.input_width,
        resolved.input_height,
        resolved.max_detections,
        resolved.iou_threshold,
        resolved.score_threshold,
    )
    logger.info(
        "Pipeline ready (model=%s, input=%dx%d, max_detections=%d, iou=%.2f, score=%.2f)",
        settings.detection_model,
        resolved.input_width,
        resolved.input_height,
        resolved.max_detections,
        resolved.iou_threshold,
        resolved.score_threshold,
    )
    return FaceLandmarkPipeline(detector, resolved, on_tensor_count=on_tensor_count)
