"""Shared geometry types and array boundary checks.

Coordinates follow image conventions: ``y`` is the row and ``x`` the column.
All numeric work downstream of these checks happens in float64.
"""

from __future__ import annotations

import math
from enum import StrEnum
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from facenorm.errors import (
    InvalidConfigurationError,
    ShapeMismatchError,
    UnsupportedElementTypeError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


class Point2D(NamedTuple):
    """A point in image space, (row, column)."""

    y: float
    x: float

    def to(self, other: Point2D) -> Point2D:
        """Displacement vector from this point to ``other``."""
        return Point2D(other.y - self.y, other.x - self.x)

    def midpoint(self, other: Point2D) -> Point2D:
        return Point2D((self.y + other.y) / 2.0, (self.x + other.x) / 2.0)

    def norm(self) -> float:
        return math.hypot(self.y, self.x)

    def angle(self) -> float:
        """Angle relative to the horizontal axis, in radians."""
        return math.atan2(self.y, self.x)

    def is_finite(self) -> bool:
        return math.isfinite(self.y) and math.isfinite(self.x)


class Size2D(NamedTuple):
    """Image extent, (height, width)."""

    height: int
    width: int


class BorderType(StrEnum):
    """How pixels beyond the image bounds are synthesised."""

    MIRROR = "mirror"
    ZERO = "zero"
    NEAREST_NEIGHBOUR = "nearest_neighbour"
    CIRCULAR = "circular"


class ElementType(StrEnum):
    """Element types accepted by geometric normalization."""

    UINT8 = "uint8"
    UINT16 = "uint16"
    FLOAT64 = "float64"


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def as_point(
    value: Sequence[float],
    name: str,
    error: type[Exception] = InvalidConfigurationError,
) -> Point2D:
    """Convert a (y, x) pair to a finite ``Point2D`` or raise ``error``."""
    try:
        y, x = value
        point = Point2D(float(y), float(x))
    except (TypeError, ValueError):
        raise error(f"{name} must be a (y, x) pair of numbers, got {value!r}") from None
    if not point.is_finite():
        raise error(f"{name} must be finite, got {value!r}")
    return point


def as_size(value: Sequence[int], name: str) -> Size2D:
    """Convert a (height, width) pair to a positive ``Size2D``."""
    try:
        height, width = value
        size = Size2D(int(height), int(width))
    except (TypeError, ValueError):
        raise InvalidConfigurationError(f"{name} must be a (height, width) pair of integers, got {value!r}") from None
    if size.height != height or size.width != width:
        raise InvalidConfigurationError(f"{name} must hold integers, got {value!r}")
    if size.height <= 0 or size.width <= 0:
        raise InvalidConfigurationError(f"{name} must be positive, got {value!r}")
    return size


# ---------------------------------------------------------------------------
# Array boundary checks
# ---------------------------------------------------------------------------


def element_type_of(array: NDArray[np.generic], name: str) -> ElementType:
    """Dispatch an array onto the closed set of supported element types."""
    try:
        return ElementType(array.dtype.name)
    except ValueError:
        supported = ", ".join(t.value for t in ElementType)
        raise UnsupportedElementTypeError(
            f"{name} arrays of type {array.dtype} are not supported (expected one of: {supported})"
        ) from None


def as_float_image(array: NDArray[np.generic], name: str) -> NDArray[np.float64]:
    """Return ``array`` as float64, casting any real numeric or boolean type."""
    kind = array.dtype.kind
    if kind not in "biuf":
        raise UnsupportedElementTypeError(f"{name} arrays of type {array.dtype} cannot be cast to float64")
    return np.asarray(array, dtype=np.float64)


def check_rank(array: NDArray[np.generic], ranks: tuple[int, ...], name: str) -> None:
    if array.ndim not in ranks:
        expected = " or ".join(f"{r}D" for r in ranks)
        raise ShapeMismatchError(f"{name} must be {expected}, got shape {array.shape}")


def check_image(array: NDArray[np.generic], ranks: tuple[int, ...], name: str) -> None:
    """Check the rank and that every plane has at least one row and column."""
    check_rank(array, ranks, name)
    if 0 in array.shape[-2:]:
        raise ShapeMismatchError(f"{name} planes must not be empty, got shape {array.shape}")


def check_mask(mask: NDArray[np.generic], shape: tuple[int, ...], name: str) -> NDArray[np.bool_]:
    if mask.dtype != np.bool_:
        raise UnsupportedElementTypeError(f"{name} must be of boolean type, got {mask.dtype}")
    if mask.shape != shape:
        raise ShapeMismatchError(f"{name} shape {mask.shape} does not match {shape}")
    return mask


def check_output(output: NDArray[np.generic], shape: tuple[int, ...], name: str) -> NDArray[np.float64]:
    if output.dtype != np.float64:
        raise UnsupportedElementTypeError(f"{name} must be of type float64, got {output.dtype}")
    if output.shape != shape:
        raise ShapeMismatchError(f"{name} shape {output.shape} does not match {shape}")
    return output
