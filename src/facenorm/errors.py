"""Error taxonomy for face normalization and filtering.

All errors are raised synchronously, before any caller-provided output
buffer is written.
"""

from __future__ import annotations


class FaceNormError(Exception):
    """Base class for all facenorm errors."""


class DegenerateLandmarksError(FaceNormError, ValueError):
    """Landmarks coincide or yield a non-finite scale or angle."""


class ShapeMismatchError(FaceNormError, ValueError):
    """Mask, output or plane count disagrees with the input."""


class UnsupportedElementTypeError(FaceNormError, TypeError):
    """Array element type is outside the supported set."""


class InvalidConfigurationError(FaceNormError, ValueError):
    """Non-positive crop size or sigma, negative radius, or similar."""
