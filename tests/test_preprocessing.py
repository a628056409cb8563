"""Tests for image decoding and detector input preparation."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from landmarkx.errors import InputShapeError
from landmarkx.ml.preprocessing import (
    check_image_tensor,
    decode_image,
    from_pixels,
    prepare_for_detection,
    resize_bilinear,
)
from landmarkx.ml.tensors import Tensor


def _png_bytes(rgb: np.ndarray) -> bytes:
    ok, encoded = cv2.imencode(".png", cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))
    assert ok
    return encoded.tobytes()


class TestDecodeImage:
    def test_decodes_to_rgb(self) -> None:
        rgb = np.zeros((4, 5, 3), dtype=np.uint8)
        rgb[..., 0] = 200  # red

        decoded = decode_image(_png_bytes(rgb))

        assert decoded.shape == (4, 5, 3)
        assert decoded.dtype == np.uint8
        assert decoded[0, 0].tolist() == [200, 0, 0]

    def test_invalid_bytes_raise(self) -> None:
        with pytest.raises(ValueError, match="decode"):
            decode_image(b"not an image")

    def test_empty_bytes_raise(self) -> None:
        with pytest.raises(ValueError, match="decode"):
            decode_image(b"")

    def test_pixel_limit_enforced(self) -> None:
        data = _png_bytes(np.zeros((10, 10, 3), dtype=np.uint8))
        with pytest.raises(ValueError, match="limit"):
            decode_image(data, max_pixels=99)
        assert decode_image(data, max_pixels=100).shape == (10, 10, 3)


class TestFromPixels:
    def test_rgb_grid_becomes_tensor(self) -> None:
        with from_pixels(np.ones((2, 3, 3), dtype=np.uint8)) as tensor:
            assert tensor.shape == (2, 3, 3)
            assert tensor.dtype == np.uint8

    def test_grayscale_is_broadcast(self) -> None:
        gray = np.arange(6, dtype=np.uint8).reshape(2, 3, 1)
        with from_pixels(gray) as tensor:
            assert tensor.shape == (2, 3, 3)
            assert tensor.numpy()[1, 2].tolist() == [5, 5, 5]

    def test_alpha_is_dropped(self) -> None:
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        rgba[..., 3] = 255
        with from_pixels(rgba) as tensor:
            assert tensor.shape == (2, 2, 3)
            assert int(tensor.numpy().max()) == 0

    def test_accepts_nested_lists(self) -> None:
        with from_pixels([[[1, 2, 3]]]) as tensor:
            assert tensor.shape == (1, 1, 3)

    @pytest.mark.parametrize("shape", [(3, 3), (1, 3, 3, 3), (3, 3, 2), (0, 3, 3), (3, 0, 3)])
    def test_rejects_bad_shapes(self, shape: tuple[int, ...]) -> None:
        with pytest.raises(InputShapeError):
            from_pixels(np.zeros(shape, dtype=np.uint8))


class TestCheckImageTensor:
    def test_accepts_rgb_image(self) -> None:
        with Tensor(np.zeros((2, 2, 3), dtype=np.float32)) as image:
            check_image_tensor(image)

    @pytest.mark.parametrize("shape", [(2, 2), (1, 2, 2, 3), (2, 2, 4), (0, 2, 3)])
    def test_rejects_bad_shapes(self, shape: tuple[int, ...]) -> None:
        with Tensor(np.zeros(shape, dtype=np.float32)) as image, pytest.raises(InputShapeError):
            check_image_tensor(image)


class TestPrepareForDetection:
    def test_resize_noop_when_size_matches(self) -> None:
        image = np.zeros((8, 8, 3), dtype=np.float32)
        assert resize_bilinear(image, 8, 8) is image

    def test_resize_changes_size(self) -> None:
        image = np.zeros((8, 16, 3), dtype=np.float32)
        assert resize_bilinear(image, 4, 2).shape == (2, 4, 3)

    def test_scales_pixels_to_unit_range(self) -> None:
        batch = np.zeros((1, 4, 4, 3), dtype=np.float32)
        batch[0, :2] = 255.0

        prepared = prepare_for_detection(batch, 4, 4)

        assert prepared.shape == (1, 4, 4, 3)
        assert prepared.dtype == np.float32
        assert prepared[0, 0, 0].tolist() == [1.0, 1.0, 1.0]
        assert prepared[0, 3, 3].tolist() == [-1.0, -1.0, -1.0]

    def test_resizes_to_model_input(self) -> None:
        batch = np.full((1, 30, 50, 3), 127.5, dtype=np.float32)
        prepared = prepare_for_detection(batch, 128, 64)
        assert prepared.shape == (1, 64, 128, 3)
        assert np.allclose(prepared, 0.0, atol=1e-5)
