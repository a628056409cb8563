"""Axis-aligned boxes backed by tracked tensors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from landmarkx.ml.tensors import Tensor

ScaleFactor = tuple[float, float]


@dataclass(frozen=True)
class Box:
    """A rectangle stored as a (1, 4) ``[x1, y1, x2, y2]`` tensor."""

    start_end: Tensor

    def dispose(self) -> None:
        self.start_end.dispose()


def scale_box(box: Box, scale_factor: ScaleFactor) -> Box:
    """Return a new box with both corners multiplied by ``(sx, sy)``.

    The input box is left untouched; the result owns a fresh tensor.
    """
    sx, sy = scale_factor
    return Box(box.start_end.mul([sx, sy, sx, sy]))
