"""Geometric normalization: rotate, scale and crop with bilinear resampling.

Each output pixel is inverse-mapped into the source image,

    p_src = center + R(-angle) (p_out - offset) / scale

and sampled bilinearly from its four neighbours with ``cv2.warpAffine``.
Angles are in radians, measured from the horizontal axis towards
increasing rows.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from facenorm.config import PointValue, SizeValue, build_config, replace_config
from facenorm.geometry import (
    BorderType,
    Point2D,
    Size2D,
    as_float_image,
    as_point,
    check_image,
    check_mask,
)
from facenorm.transforms.extrapolate import CV2_BORDER_MODES

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Source coordinates this close to the image edge still count as inside.
_INSIDE_TOLERANCE = 1e-9

_WARP_FLAGS = cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class GeometricResampler(Protocol):
    """Rotate + scale + translate + crop with sub-pixel interpolation."""

    def configure(
        self,
        source_center: Sequence[float],
        rotation_angle: float,
        scale: float,
        output_size: Sequence[int],
        output_offset: Sequence[float],
    ) -> GeometricResampler:
        """Return a resampler configured with the given transform."""
        ...

    def resample(
        self,
        image: NDArray[np.generic],
        mask: NDArray[np.bool_] | None = None,
    ) -> tuple[NDArray[np.float64], NDArray[np.bool_]]:
        """Resample ``image`` (and its validity mask) into the output grid.

        Returns:
            The float64 output image and the boolean output mask, where
            ``False`` marks pixels sampled from outside the input or from
            invalid input pixels.
        """
        ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class GeomNormConfig(BaseModel):
    """Immutable transform description for ``GeomNorm``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_center: PointValue = Point2D(0.0, 0.0)
    rotation_angle: float = Field(default=0.0, allow_inf_nan=False)
    scale: float = Field(default=1.0, gt=0.0, allow_inf_nan=False)
    crop_size: SizeValue
    crop_offset: PointValue = Point2D(0.0, 0.0)
    border_type: BorderType = BorderType.ZERO


# ---------------------------------------------------------------------------
# Bilinear implementation
# ---------------------------------------------------------------------------


class GeomNorm:
    """Inverse-mapping bilinear resampler."""

    def __init__(self, config: GeomNormConfig) -> None:
        self._config = config
        # The warp matrix and source coordinates only depend on the configuration.
        self._matrix: NDArray[np.float64] | None = None
        self._coordinates: tuple[NDArray[np.float64], NDArray[np.float64]] | None = None

    @classmethod
    def create(
        cls,
        crop_size: Sequence[int],
        *,
        source_center: Sequence[float] = (0.0, 0.0),
        rotation_angle: float = 0.0,
        scale: float = 1.0,
        crop_offset: Sequence[float] = (0.0, 0.0),
        border_type: BorderType = BorderType.ZERO,
    ) -> GeomNorm:
        config = build_config(
            GeomNormConfig,
            source_center=source_center,
            rotation_angle=rotation_angle,
            scale=scale,
            crop_size=crop_size,
            crop_offset=crop_offset,
            border_type=border_type,
        )
        return cls(config)

    # -- Configuration ------------------------------------------------------

    @property
    def config(self) -> GeomNormConfig:
        return self._config

    @property
    def crop_size(self) -> Size2D:
        return self._config.crop_size

    @property
    def border_type(self) -> BorderType:
        return self._config.border_type

    def configure(
        self,
        source_center: Sequence[float],
        rotation_angle: float,
        scale: float,
        output_size: Sequence[int],
        output_offset: Sequence[float],
    ) -> GeomNorm:
        """Return a new resampler for the given transform, keeping the border type."""
        return self.reconfigure(
            source_center=source_center,
            rotation_angle=rotation_angle,
            scale=scale,
            crop_size=output_size,
            crop_offset=output_offset,
        )

    def reconfigure(self, **changes: object) -> GeomNorm:
        return GeomNorm(replace_config(self._config, **changes))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GeomNorm):
            return NotImplemented
        return self._config == other._config

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        c = self._config
        return (
            f"GeomNorm(center={tuple(c.source_center)}, angle={c.rotation_angle:.6g}, "
            f"scale={c.scale:.6g}, crop_size={tuple(c.crop_size)}, offset={tuple(c.crop_offset)})"
        )

    # -- Point mapping ------------------------------------------------------

    def transform_point(self, point: Sequence[float]) -> Point2D:
        """Map a source-image point into output coordinates."""
        c = self._config
        p = as_point(point, "point")
        dy = p.y - c.source_center.y
        dx = p.x - c.source_center.x
        cos_a, sin_a = math.cos(c.rotation_angle), math.sin(c.rotation_angle)
        return Point2D(
            c.crop_offset.y + c.scale * (sin_a * dx + cos_a * dy),
            c.crop_offset.x + c.scale * (cos_a * dx - sin_a * dy),
        )

    def inverse_transform_point(self, point: Sequence[float]) -> Point2D:
        """Map an output-image point back into source coordinates."""
        c = self._config
        p = as_point(point, "point")
        dy = (p.y - c.crop_offset.y) / c.scale
        dx = (p.x - c.crop_offset.x) / c.scale
        cos_a, sin_a = math.cos(c.rotation_angle), math.sin(c.rotation_angle)
        return Point2D(
            c.source_center.y - sin_a * dx + cos_a * dy,
            c.source_center.x + cos_a * dx + sin_a * dy,
        )

    def inverse_matrix(self) -> NDArray[np.float64]:
        """2x3 affine matrix taking output ``(x, y)`` to source ``(x, y)``.

        This is the matrix handed to ``cv2.warpAffine`` with
        ``WARP_INVERSE_MAP``.
        """
        if self._matrix is None:
            c = self._config
            cos_s = math.cos(c.rotation_angle) / c.scale
            sin_s = math.sin(c.rotation_angle) / c.scale
            oy, ox = c.crop_offset
            self._matrix = np.array(
                [
                    [cos_s, sin_s, c.source_center.x - cos_s * ox - sin_s * oy],
                    [-sin_s, cos_s, c.source_center.y + sin_s * ox - cos_s * oy],
                ]
            )
        return self._matrix

    # -- Resampling ---------------------------------------------------------

    def resample(
        self,
        image: NDArray[np.generic],
        mask: NDArray[np.bool_] | None = None,
    ) -> tuple[NDArray[np.float64], NDArray[np.bool_]]:
        """Resample a 2D image, or each plane of a 3D stack.

        ``mask`` must match the (per-plane) image shape; when absent, every
        input pixel is valid. The returned mask has the crop size.

        Raises:
            ShapeMismatchError: If the image is not 2D/3D, has empty planes
                or the mask shape differs.
            UnsupportedElementTypeError: If the image or mask type is unsupported.
        """
        check_image(image, (2, 3), "image")
        plane_shape = image.shape[-2:]
        if mask is not None:
            check_mask(mask, plane_shape, "mask")
        src = as_float_image(image, "image")

        height, width = plane_shape
        sy, sx = self._source_coordinates()
        output_mask = (sy >= -_INSIDE_TOLERANCE) & (sy <= height - 1 + _INSIDE_TOLERANCE)
        output_mask &= (sx >= -_INSIDE_TOLERANCE) & (sx <= width - 1 + _INSIDE_TOLERANCE)
        if mask is not None and not mask.all():
            # Any invalid neighbour with a non-zero weight leaves a trace here.
            invalid = self._warp((~mask).astype(np.float64), cv2.BORDER_CONSTANT)
            output_mask &= invalid == 0.0

        border_mode = CV2_BORDER_MODES[self.border_type]
        planes = src if src.ndim == 3 else src[np.newaxis]
        output = np.empty((planes.shape[0], *self.crop_size), dtype=np.float64)
        for index, plane in enumerate(planes):
            output[index] = self._warp(plane, border_mode)

        if src.ndim == 2:
            return output[0], output_mask
        return output, output_mask

    def _warp(self, plane: NDArray[np.float64], border_mode: int) -> NDArray[np.float64]:
        height, width = self.crop_size
        return cv2.warpAffine(
            np.ascontiguousarray(plane),
            self.inverse_matrix(),
            (width, height),
            flags=_WARP_FLAGS,
            borderMode=border_mode,
            borderValue=0.0,
        )

    def _source_coordinates(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        if self._coordinates is None:
            m = self.inverse_matrix()
            rows, cols = np.indices(self.crop_size, dtype=np.float64)
            sx = m[0, 0] * cols + m[0, 1] * rows + m[0, 2]
            sy = m[1, 0] * cols + m[1, 1] * rows + m[1, 2]
            self._coordinates = (sy, sx)
            logger.debug("Computed source coordinates for %r", self)
        return self._coordinates
