"""Border extrapolation for convolution and resampling."""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import numpy as np

from facenorm.geometry import BorderType

if TYPE_CHECKING:
    from numpy.typing import NDArray

# Mirror repeats the edge sample: ... 1 0 | 0 1 ... n-1 | n-1 n-2 ...
_PAD_MODES: dict[BorderType, str] = {
    BorderType.MIRROR: "symmetric",
    BorderType.ZERO: "constant",
    BorderType.NEAREST_NEIGHBOUR: "edge",
    BorderType.CIRCULAR: "wrap",
}

# Same policies for OpenCV warps (BORDER_REFLECT is numpy's "symmetric").
CV2_BORDER_MODES: dict[BorderType, int] = {
    BorderType.MIRROR: cv2.BORDER_REFLECT,
    BorderType.ZERO: cv2.BORDER_CONSTANT,
    BorderType.NEAREST_NEIGHBOUR: cv2.BORDER_REPLICATE,
    BorderType.CIRCULAR: cv2.BORDER_WRAP,
}


def pad(
    image: NDArray[np.float64],
    radius_y: int,
    radius_x: int,
    border_type: BorderType,
) -> NDArray[np.float64]:
    """Surround a 2D image with an extrapolated border of the given radii."""
    return np.pad(image, ((radius_y, radius_y), (radius_x, radius_x)), mode=_PAD_MODES[border_type])  # type: ignore[call-overload]
