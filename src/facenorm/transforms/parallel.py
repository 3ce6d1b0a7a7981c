"""Plane-sharded execution on a thread pool.

Each task works on its own copy of the component, so no configuration is
shared between threads. numpy releases the GIL inside the heavy array
operations, which is where the time goes.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

import numpy as np

from facenorm.geometry import as_float_image, check_image

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import TracebackType

    from numpy.typing import NDArray

    from facenorm.config import Settings
    from facenorm.transforms.face_eyes_norm import FaceAligner
    from facenorm.transforms.weighted_gaussian import WeightedGaussianFilter

logger = logging.getLogger(__name__)


class PlanePool:
    """Runs per-plane filtering and alignment on a thread pool."""

    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="facenorm-plane",
        )
        self._max_workers = max_workers

    @classmethod
    def from_settings(cls, settings: Settings) -> PlanePool:
        return cls(max_workers=settings.max_workers)

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def filter_planes(self, filt: WeightedGaussianFilter, stack: NDArray[np.generic]) -> NDArray[np.float64]:
        """Smooth every plane of a 3D stack; equals ``filt.filter(stack)``."""
        check_image(stack, (3,), "stack")
        planes = as_float_image(stack, "stack")
        logger.debug("Filtering %d planes on %d workers", planes.shape[0], self._max_workers)
        futures = [self._executor.submit(filt.copy().filter, plane) for plane in planes]
        return np.stack([future.result() for future in futures]) if futures else np.empty(planes.shape)

    def align_planes(
        self,
        aligner: FaceAligner,
        stack: NDArray[np.generic],
        right: Sequence[float],
        left: Sequence[float],
    ) -> NDArray[np.float64]:
        """Align every plane of a 3D stack (e.g. colour planes) with the same landmarks.

        Planes are aligned by copies, so ``aligner`` itself is left untouched.
        """
        check_image(stack, (3,), "stack")
        # Fail on degenerate landmarks before submitting any work.
        aligner.compute_parameters(right, left)
        logger.debug("Aligning %d planes on %d workers", stack.shape[0], self._max_workers)
        futures = [self._executor.submit(aligner.copy().align, plane, right, left) for plane in stack]
        if not futures:
            return np.empty((0, *aligner.crop_size))
        return np.stack([future.result() for future in futures])

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)

    def __enter__(self) -> PlanePool:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()
