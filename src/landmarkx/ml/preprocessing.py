"""Image preprocessing: decoding, pixel-grid conversion, and detector input preparation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import cv2
import numpy as np

from landmarkx.errors import InputShapeError
from landmarkx.ml.tensors import Tensor

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

SUPPORTED_CHANNELS = (1, 3, 4)


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes in any format OpenCV can read.
        max_pixels: Reject images with more than this many pixels.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ValueError: If the image cannot be decoded or exceeds the pixel limit.
    """
    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    decoded = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    if decoded is None:
        raise ValueError("Could not decode image data")

    height, width = decoded.shape[:2]
    if max_pixels is not None and height * width > max_pixels:
        raise ValueError(f"Image has {height * width} pixels, limit is {max_pixels}")

    rgb: NDArray[np.uint8] = cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB)
    return rgb


def from_pixels(pixels: ArrayLike) -> Tensor:
    """Convert an HxWxC pixel grid into a tracked HxWx3 tensor.

    Grayscale grids are broadcast to three channels and an alpha channel is
    dropped. The returned tensor is owned by the caller.

    Raises:
        InputShapeError: If the grid is not rank 3 with 1, 3, or 4 channels, or is empty.
    """
    data: NDArray[Any] = np.asarray(pixels)
    if data.ndim != 3:
        raise InputShapeError(f"Expected an image of shape (height, width, channels), got shape {data.shape}")
    height, width, channels = data.shape
    if channels not in SUPPORTED_CHANNELS:
        raise InputShapeError(f"Expected 1, 3, or 4 channels, got {channels}")
    if height == 0 or width == 0:
        raise InputShapeError(f"Image has an empty dimension: {data.shape}")

    if channels == 1:
        data = np.repeat(data, 3, axis=2)
    elif channels == 4:
        data = data[:, :, :3]
    return Tensor(data)


def check_image_tensor(image: Tensor) -> None:
    """Validate that a caller-supplied tensor is a non-empty HxWx3 image.

    Raises:
        InputShapeError: If the rank or channel count is wrong.
    """
    if image.rank != 3:
        raise InputShapeError(f"Expected a rank-3 image tensor, got rank {image.rank} with shape {image.shape}")
    height, width, channels = image.shape
    if channels != 3:
        raise InputShapeError(f"Expected 3 channels, got {channels}")
    if height == 0 or width == 0:
        raise InputShapeError(f"Image has an empty dimension: {image.shape}")


def resize_bilinear(image: NDArray[np.float32], width: int, height: int) -> NDArray[np.float32]:
    """Resize an HxWxC float image to ``height`` x ``width``."""
    if image.shape[1] == width and image.shape[0] == height:
        return image
    resized: NDArray[np.float32] = cv2.resize(image, (width, height), interpolation=cv2.INTER_LINEAR)
    return resized


def prepare_for_detection(batch: NDArray[np.float32], width: int, height: int) -> NDArray[np.float32]:
    """Resize a (1, H, W, 3) batch to the model input size and scale pixels to [-1, 1].

    Returns:
        Float32 array of shape (1, height, width, 3).
    """
    resized = resize_bilinear(np.ascontiguousarray(batch[0], dtype=np.float32), width, height)
    normalized = resized / np.float32(127.5) - np.float32(1.0)
    return normalized[np.newaxis, ...].astype(np.float32)
