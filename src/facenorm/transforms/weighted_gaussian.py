"""Edge-aware Gaussian smoothing for self-quotient-image preprocessing.

Every output pixel is the weighted mean of its neighbourhood. The weights
start from a fixed Gaussian kernel and are attenuated per pixel for
neighbours whose intensity differs from the centre, then renormalized to
sum to one. Smoothing therefore does not leak across strong edges.
"""

from __future__ import annotations

import copy
import logging
import math
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from pydantic import BaseModel, ConfigDict, Field

from facenorm.config import build_config, replace_config
from facenorm.errors import ShapeMismatchError
from facenorm.geometry import BorderType, as_float_image, check_image, check_output
from facenorm.transforms.extrapolate import pad

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from facenorm.config import Settings

    WeightingFunction = Callable[
        [NDArray[np.float64], NDArray[np.float64], "float | None"],
        NDArray[np.float64],
    ]

logger = logging.getLogger(__name__)

_WINDOW_AXES = (-2, -1)


# ---------------------------------------------------------------------------
# Weighting policies
# ---------------------------------------------------------------------------


class Weighting(StrEnum):
    """How neighbour intensities attenuate the base kernel."""

    # Keep neighbours on the same side of the local mean as the centre pixel.
    CENTER_REGION = "center_region"
    # Keep the larger of the two regions split at the local mean.
    MAJORITY_REGION = "majority_region"
    # Bilateral-style Gaussian of the intensity difference to the centre.
    RANGE_GAUSSIAN = "range_gaussian"


def _center_region(
    windows: NDArray[np.float64],
    centers: NDArray[np.float64],
    range_sigma: float | None,
) -> NDArray[np.float64]:
    threshold = windows.mean(axis=_WINDOW_AXES, keepdims=True)
    return ((windows >= threshold) == (centers >= threshold)).astype(np.float64)


def _majority_region(
    windows: NDArray[np.float64],
    centers: NDArray[np.float64],
    range_sigma: float | None,
) -> NDArray[np.float64]:
    threshold = windows.mean(axis=_WINDOW_AXES, keepdims=True)
    above = windows >= threshold
    size = windows.shape[-2] * windows.shape[-1]
    keep_above = 2 * above.sum(axis=_WINDOW_AXES, keepdims=True) >= size
    return np.where(keep_above, above, ~above).astype(np.float64)


def _range_gaussian(
    windows: NDArray[np.float64],
    centers: NDArray[np.float64],
    range_sigma: float | None,
) -> NDArray[np.float64]:
    if range_sigma is None:
        spread = windows.std(axis=_WINDOW_AXES, keepdims=True)
    else:
        spread = np.full(centers.shape, range_sigma)
    denominator = 2.0 * spread * spread
    flat = denominator == 0.0
    # Flat neighbourhoods keep the base kernel untouched.
    factor = np.exp(-np.square(windows - centers) / np.where(flat, 1.0, denominator))
    return np.where(flat, 1.0, factor)


WEIGHTING_FUNCTIONS: dict[Weighting, WeightingFunction] = {
    Weighting.CENTER_REGION: _center_region,
    Weighting.MAJORITY_REGION: _majority_region,
    Weighting.RANGE_GAUSSIAN: _range_gaussian,
}


# ---------------------------------------------------------------------------
# Kernel
# ---------------------------------------------------------------------------


def compute_kernel(radius_y: int, radius_x: int, sigma_y: float, sigma_x: float) -> NDArray[np.float64]:
    """Return the read-only 2D Gaussian kernel, normalized to sum to one."""
    i = np.arange(-radius_y, radius_y + 1, dtype=np.float64)[:, np.newaxis]
    j = np.arange(-radius_x, radius_x + 1, dtype=np.float64)[np.newaxis, :]
    kernel = np.exp(-(i * i / (2.0 * sigma_y * sigma_y) + j * j / (2.0 * sigma_x * sigma_x)))
    kernel /= kernel.sum()
    kernel.flags.writeable = False
    return kernel


class WeightedGaussianConfig(BaseModel):
    """Kernel extent, spread, border policy and weighting policy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    radius_y: int = Field(default=1, ge=0)
    radius_x: int = Field(default=1, ge=0)
    sigma_y: float = Field(default=math.sqrt(2.0), gt=0.0, allow_inf_nan=False)
    sigma_x: float = Field(default=math.sqrt(2.0), gt=0.0, allow_inf_nan=False)
    border_type: BorderType = BorderType.MIRROR
    weighting: Weighting = Weighting.CENTER_REGION
    range_sigma: float | None = Field(default=None, gt=0.0, allow_inf_nan=False)
    # Rows filtered per vectorised block; bounds temporary memory.
    chunk_rows: int = Field(default=16, ge=1)

    def kernel_parameters(self) -> tuple[int, int, float, float]:
        return (self.radius_y, self.radius_x, self.sigma_y, self.sigma_x)


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class WeightedGaussianFilter:
    """Smooths 2D images, or stacks of them, with a locally weighted Gaussian."""

    def __init__(self, config: WeightedGaussianConfig | None = None) -> None:
        self._config = config or WeightedGaussianConfig()
        self._kernel = compute_kernel(*self._config.kernel_parameters())
        logger.debug("Computed %s kernel for %r", self._kernel.shape, self)

    @classmethod
    def create(cls, **values: object) -> WeightedGaussianFilter:
        """Build a filter from keyword configuration values.

        Raises:
            InvalidConfigurationError: On negative radii or non-positive sigmas.
        """
        return cls(build_config(WeightedGaussianConfig, **values))

    @classmethod
    def from_settings(cls, settings: Settings) -> WeightedGaussianFilter:
        return cls.create(
            radius_y=settings.filter_radius_y,
            radius_x=settings.filter_radius_x,
            sigma_y=settings.filter_sigma_y,
            sigma_x=settings.filter_sigma_x,
            border_type=settings.filter_border,
            chunk_rows=settings.filter_chunk_rows,
        )

    def copy(self) -> WeightedGaussianFilter:
        """Duplicate the filter, sharing the read-only kernel."""
        return copy.copy(self)

    def reconfigure(self, **changes: object) -> WeightedGaussianFilter:
        """Return a new filter with some configuration values replaced.

        The kernel is only recomputed when a radius or a sigma changes.
        """
        config = replace_config(self._config, **changes)
        if config.kernel_parameters() != self._config.kernel_parameters():
            return WeightedGaussianFilter(config)
        other = copy.copy(self)
        other._config = config
        return other

    # -- Configuration access -----------------------------------------------

    @property
    def config(self) -> WeightedGaussianConfig:
        return self._config

    @property
    def radius_y(self) -> int:
        return self._config.radius_y

    @property
    def radius_x(self) -> int:
        return self._config.radius_x

    @property
    def sigma_y(self) -> float:
        return self._config.sigma_y

    @property
    def sigma_x(self) -> float:
        return self._config.sigma_x

    @property
    def border_type(self) -> BorderType:
        return self._config.border_type

    @property
    def weighting(self) -> Weighting:
        return self._config.weighting

    @property
    def kernel(self) -> NDArray[np.float64]:
        """The unweighted base kernel (read-only)."""
        return self._kernel

    # -- Filtering ----------------------------------------------------------

    def filter(self, src: NDArray[np.generic]) -> NDArray[np.float64]:
        """Return the smoothed float64 copy of a 2D image or 3D plane stack.

        Raises:
            ShapeMismatchError: If ``src`` is neither 2D nor 3D.
            UnsupportedElementTypeError: If ``src`` cannot be cast to float64.
        """
        check_image(src, (2, 3), "src")
        image = as_float_image(src, "src")
        dst = np.empty(image.shape, dtype=np.float64)
        if image.ndim == 2:
            self._filter_plane(image, dst)
        else:
            for plane in range(image.shape[0]):
                self._filter_plane(image[plane], dst[plane])
        return dst

    __call__ = filter

    def filter_into(self, src: NDArray[np.generic], dst: NDArray[np.float64]) -> None:
        """Smooth ``src`` into the caller-provided float64 buffer ``dst``.

        Raises:
            ShapeMismatchError: If ranks, plane counts or plane shapes differ.
            UnsupportedElementTypeError: If ``dst`` is not float64.
        """
        check_image(src, (2, 3), "src")
        if dst.ndim != src.ndim:
            raise ShapeMismatchError(f"dst must be {src.ndim}D like src, got shape {dst.shape}")
        if src.ndim == 3 and dst.shape[0] != src.shape[0]:
            raise ShapeMismatchError(f"src has {src.shape[0]} planes but dst has {dst.shape[0]}")
        check_output(dst, src.shape, "dst")
        dst[...] = self.filter(src)

    def _filter_plane(self, image: NDArray[np.float64], dst: NDArray[np.float64]) -> None:
        ry, rx = self.radius_y, self.radius_x
        padded = pad(image, ry, rx, self.border_type)
        windows = sliding_window_view(padded, self._kernel.shape)
        weigh = WEIGHTING_FUNCTIONS[self.weighting]
        step = self._config.chunk_rows

        for top in range(0, image.shape[0], step):
            block = windows[top : top + step]
            centers = image[top : top + step, :, np.newaxis, np.newaxis]
            weighted = self._kernel * weigh(block, centers, self._config.range_sigma)
            total = weighted.sum(axis=_WINDOW_AXES)
            # Fall back to the base kernel if every weight vanished.
            empty = total == 0.0
            if np.any(empty):
                weighted[empty] = self._kernel
                total[empty] = 1.0
            dst[top : top + step] = (weighted * block).sum(axis=_WINDOW_AXES) / total

    # -- Comparison ---------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WeightedGaussianFilter):
            return NotImplemented
        return self._config == other._config

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        c = self._config
        return (
            f"WeightedGaussianFilter(radius=({c.radius_y}, {c.radius_x}), "
            f"sigma=({c.sigma_y:.6g}, {c.sigma_x:.6g}), border_type={c.border_type.value}, "
            f"weighting={c.weighting.value})"
        )
