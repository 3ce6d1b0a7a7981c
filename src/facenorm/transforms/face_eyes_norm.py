"""Face normalization from two landmark positions.

A ``FaceAligner`` maps two observed landmarks (usually the eyes) onto two
fixed target positions in a cropped output image. Instead of the eyes, any
pair of landmarks can be used, as long as "right" and "left" refer to the
same landmarks at configuration time and at alignment time.

The alignment is a rotation about the landmark midpoint, followed by a
scaling and a translation that places the midpoint onto the crop offset.
The actual resampling is delegated to a ``GeomNorm``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from facenorm.config import PointValue, SizeValue, build_config, replace_config
from facenorm.errors import DegenerateLandmarksError, InvalidConfigurationError
from facenorm.geometry import (
    BorderType,
    Point2D,
    Size2D,
    as_point,
    check_image,
    check_mask,
    check_output,
    element_type_of,
)
from facenorm.transforms.geom_norm import GeomNorm

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    from facenorm.config import Settings

logger = logging.getLogger(__name__)


class FaceAlignerConfig(BaseModel):
    """Target geometry of the normalized face."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    crop_size: SizeValue
    eyes_distance: float = Field(gt=0.0, allow_inf_nan=False)
    eyes_angle: float = Field(default=0.0, allow_inf_nan=False)
    crop_offset: PointValue
    border_type: BorderType = BorderType.ZERO


@dataclass(frozen=True)
class TransformParameters:
    """Transform applied by one alignment.

    Attributes:
        angle: Rotation in radians applied to the source image.
        scale: Scaling factor (target distance / observed distance).
        center: Landmark midpoint in source coordinates.
        crop_size: Size of the normalized image.
        crop_offset: Output point onto which ``center`` is mapped.
    """

    angle: float
    scale: float
    center: Point2D
    crop_size: Size2D
    crop_offset: Point2D


class FaceAligner:
    """Geometric face normalization based on two landmark positions."""

    def __init__(self, config: FaceAlignerConfig) -> None:
        self._config = config
        self._resampler = GeomNorm.create(config.crop_size, crop_offset=config.crop_offset, border_type=config.border_type)
        self._last: TransformParameters | None = None
        self._geom_norm: GeomNorm | None = None

    # -- Construction -------------------------------------------------------

    @classmethod
    def from_eyes_distance(
        cls,
        crop_size: Sequence[int],
        eyes_distance: float,
        eyes_center: Sequence[float],
        *,
        border_type: BorderType = BorderType.ZERO,
    ) -> FaceAligner:
        """Place level eyes ``eyes_distance`` apart, centred on ``eyes_center``."""
        config = build_config(
            FaceAlignerConfig,
            crop_size=crop_size,
            eyes_distance=eyes_distance,
            eyes_angle=0.0,
            crop_offset=eyes_center,
            border_type=border_type,
        )
        return cls(config)

    @classmethod
    def from_landmarks(
        cls,
        crop_size: Sequence[int],
        right_target: Sequence[float],
        left_target: Sequence[float],
        *,
        border_type: BorderType = BorderType.ZERO,
    ) -> FaceAligner:
        """Place two arbitrary landmarks at the given output positions."""
        right = as_point(right_target, "right_target")
        left = as_point(left_target, "left_target")
        baseline = right.to(left)
        if baseline.norm() == 0.0:
            raise InvalidConfigurationError(f"right_target and left_target coincide at {tuple(right)}")
        config = build_config(
            FaceAlignerConfig,
            crop_size=crop_size,
            eyes_distance=baseline.norm(),
            eyes_angle=baseline.angle(),
            crop_offset=right.midpoint(left),
            border_type=border_type,
        )
        return cls(config)

    @classmethod
    def from_settings(cls, settings: Settings) -> FaceAligner:
        return cls.from_landmarks(
            (settings.crop_height, settings.crop_width),
            (settings.right_eye_y, settings.right_eye_x),
            (settings.left_eye_y, settings.left_eye_x),
            border_type=settings.resample_border,
        )

    def copy(self) -> FaceAligner:
        """Duplicate the aligner, including the last-applied parameters."""
        other = FaceAligner(self._config)
        other._last = self._last
        other._geom_norm = self._geom_norm
        return other

    __copy__ = copy

    def reconfigure(self, **changes: object) -> FaceAligner:
        """Return a new aligner with some configuration values replaced.

        Accepts ``crop_size``, ``eyes_distance``, ``eyes_angle``,
        ``crop_offset`` and ``border_type``.
        """
        return FaceAligner(replace_config(self._config, **changes))

    # -- Configuration access -----------------------------------------------

    @property
    def config(self) -> FaceAlignerConfig:
        return self._config

    @property
    def crop_size(self) -> Size2D:
        return self._config.crop_size

    @property
    def eyes_distance(self) -> float:
        return self._config.eyes_distance

    @property
    def eyes_angle(self) -> float:
        """Angle of the right-to-left landmark line in the output, in radians."""
        return self._config.eyes_angle

    @property
    def crop_offset(self) -> Point2D:
        return self._config.crop_offset

    @property
    def right_target(self) -> Point2D:
        half = self._half_baseline()
        return Point2D(self.crop_offset.y - half.y, self.crop_offset.x - half.x)

    @property
    def left_target(self) -> Point2D:
        half = self._half_baseline()
        return Point2D(self.crop_offset.y + half.y, self.crop_offset.x + half.x)

    def _half_baseline(self) -> Point2D:
        half = self.eyes_distance / 2.0
        return Point2D(half * math.sin(self.eyes_angle), half * math.cos(self.eyes_angle))

    # -- Last applied transform ---------------------------------------------

    @property
    def last_parameters(self) -> TransformParameters | None:
        return self._last

    @property
    def last_angle(self) -> float:
        """Rotation applied by the latest alignment (0 before the first one)."""
        return self._last.angle if self._last else 0.0

    @property
    def last_scale(self) -> float:
        return self._last.scale if self._last else 1.0

    @property
    def last_offset(self) -> Point2D:
        """Source landmark midpoint used by the latest alignment."""
        return self._last.center if self._last else Point2D(0.0, 0.0)

    @property
    def geom_norm(self) -> GeomNorm | None:
        """Resampler used by the latest alignment."""
        return self._geom_norm

    def inverse_map_point(self, point: Sequence[float]) -> Point2D:
        """Map a point of the latest normalized image back to the source image."""
        if self._geom_norm is None:
            raise RuntimeError("no alignment has been performed yet")
        return self._geom_norm.inverse_transform_point(point)

    # -- Alignment ----------------------------------------------------------

    def compute_parameters(self, right: Sequence[float], left: Sequence[float]) -> TransformParameters:
        """Derive the transform that moves ``right``/``left`` onto the targets.

        Raises:
            DegenerateLandmarksError: If the landmarks coincide or are not finite.
        """
        right_pt = as_point(right, "right", DegenerateLandmarksError)
        left_pt = as_point(left, "left", DegenerateLandmarksError)
        observed = right_pt.to(left_pt)
        distance = observed.norm()
        if distance == 0.0 or not math.isfinite(distance):
            raise DegenerateLandmarksError(
                f"landmarks {tuple(right_pt)} and {tuple(left_pt)} do not define a direction"
            )
        scale = self.eyes_distance / distance
        if not math.isfinite(scale) or scale <= 0.0:
            raise DegenerateLandmarksError(f"landmark distance {distance!r} yields a non-finite scale")
        angle = math.remainder(self.eyes_angle - observed.angle(), 2.0 * math.pi)
        return TransformParameters(
            angle=angle,
            scale=scale,
            center=right_pt.midpoint(left_pt),
            crop_size=self.crop_size,
            crop_offset=self.crop_offset,
        )

    def align(
        self,
        image: NDArray[np.generic],
        right: Sequence[float],
        left: Sequence[float],
    ) -> NDArray[np.float64]:
        """Return a newly allocated normalized face of size ``crop_size``.

        Args:
            image: 2D uint8, uint16 or float64 image.
            right: Position of the right landmark in ``image``, (y, x).
            left: Position of the left landmark in ``image``, (y, x).
        """
        output, _ = self._extract(image, right, left, None)
        return output

    __call__ = align

    def align_with_mask(
        self,
        image: NDArray[np.generic],
        right: Sequence[float],
        left: Sequence[float],
        input_mask: NDArray[np.bool_] | None = None,
    ) -> tuple[NDArray[np.float64], NDArray[np.bool_]]:
        """Return the normalized face and its mask of valid pixels."""
        return self._extract(image, right, left, input_mask)

    def align_into(
        self,
        image: NDArray[np.generic],
        right: Sequence[float],
        left: Sequence[float],
        output: NDArray[np.float64],
        *,
        input_mask: NDArray[np.bool_] | None = None,
        output_mask: NDArray[np.bool_] | None = None,
    ) -> None:
        """Fill caller-provided buffers with the normalized face (and mask).

        Nothing is written unless every check passes.
        """
        check_output(output, self.crop_size, "output")
        if output_mask is not None:
            check_mask(output_mask, self.crop_size, "output_mask")
        result, result_mask = self._extract(image, right, left, input_mask)
        output[...] = result
        if output_mask is not None:
            output_mask[...] = result_mask

    def _extract(
        self,
        image: NDArray[np.generic],
        right: Sequence[float],
        left: Sequence[float],
        input_mask: NDArray[np.bool_] | None,
    ) -> tuple[NDArray[np.float64], NDArray[np.bool_]]:
        check_image(image, (2,), "image")
        element_type_of(image, "image")
        if input_mask is not None:
            check_mask(input_mask, image.shape, "input_mask")

        params = self.compute_parameters(right, left)
        geom_norm = self._resampler.configure(
            params.center,
            params.angle,
            params.scale,
            params.crop_size,
            params.crop_offset,
        )
        output, output_mask = geom_norm.resample(image, input_mask)

        self._last = params
        self._geom_norm = geom_norm
        logger.debug(
            "Aligned %s image: angle=%.6f scale=%.6f center=(%.3f, %.3f)",
            image.dtype,
            params.angle,
            params.scale,
            params.center.y,
            params.center.x,
        )
        return output, output_mask

    # -- Comparison ---------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FaceAligner):
            return NotImplemented
        return (
            self.crop_size == other.crop_size
            and self.eyes_distance == other.eyes_distance
            and self.eyes_angle == other.eyes_angle
            and self.crop_offset == other.crop_offset
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"FaceAligner(crop_size={tuple(self.crop_size)}, eyes_distance={self.eyes_distance:.6g}, "
            f"eyes_angle={self.eyes_angle:.6g}, crop_offset={tuple(self.crop_offset)})"
        )
