"""Tests for the weighted Gaussian smoothing filter."""

from __future__ import annotations

import logging
import math
import os
from unittest.mock import patch

import numpy as np
import pytest

from facenorm.config import get_settings
from facenorm.errors import InvalidConfigurationError, ShapeMismatchError, UnsupportedElementTypeError
from facenorm.geometry import BorderType
from facenorm.transforms.weighted_gaussian import (
    WeightedGaussianConfig,
    WeightedGaussianFilter,
    Weighting,
    compute_kernel,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_filter(**overrides: object) -> WeightedGaussianFilter:
    return WeightedGaussianFilter.create(**overrides)


def _make_image(seed: int = 7, shape: tuple[int, ...] = (12, 15)) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(0.0, 255.0, size=shape)


_NUMPY_PAD_MODES = {
    BorderType.MIRROR: "symmetric",
    BorderType.ZERO: "constant",
    BorderType.NEAREST_NEIGHBOUR: "edge",
    BorderType.CIRCULAR: "wrap",
}


def _center_region_reference(image: np.ndarray, kernel: np.ndarray, border_type: BorderType) -> np.ndarray:
    """Pixel-by-pixel center-region weighted mean, written out directly."""
    ry, rx = kernel.shape[0] // 2, kernel.shape[1] // 2
    padded = np.pad(image, ((ry, ry), (rx, rx)), mode=_NUMPY_PAD_MODES[border_type])
    expected = np.empty_like(image)
    for y in range(image.shape[0]):
        for x in range(image.shape[1]):
            window = padded[y : y + 2 * ry + 1, x : x + 2 * rx + 1]
            threshold = window.mean()
            same_side = (window >= threshold) == (image[y, x] >= threshold)
            weights = kernel * same_side
            expected[y, x] = (weights * window).sum() / weights.sum()
    return expected


# ---------------------------------------------------------------------------
# Kernel
# ---------------------------------------------------------------------------


class TestKernel:
    def test_default_kernel(self) -> None:
        kernel = WeightedGaussianFilter().kernel
        assert kernel.shape == (3, 3)
        assert kernel.sum() == pytest.approx(1.0, abs=1e-9)
        np.testing.assert_allclose(kernel, kernel[::-1, ::-1])
        assert kernel[1, 1] == kernel.max()

    @pytest.mark.parametrize(
        ("radius_y", "radius_x", "sigma_y", "sigma_x"),
        [(0, 0, 1.0, 1.0), (1, 1, math.sqrt(2.0), math.sqrt(2.0)), (2, 5, 0.5, 3.0), (7, 3, 10.0, 0.1)],
    )
    def test_kernel_sums_to_one(self, radius_y: int, radius_x: int, sigma_y: float, sigma_x: float) -> None:
        kernel = compute_kernel(radius_y, radius_x, sigma_y, sigma_x)
        assert kernel.shape == (2 * radius_y + 1, 2 * radius_x + 1)
        assert kernel.sum() == pytest.approx(1.0, abs=1e-9)

    def test_kernel_values(self) -> None:
        kernel = compute_kernel(1, 0, 1.0, 1.0)
        expected = np.array([[math.exp(-0.5)], [1.0], [math.exp(-0.5)]])
        np.testing.assert_allclose(kernel, expected / expected.sum())

    def test_kernel_is_read_only(self) -> None:
        with pytest.raises(ValueError):
            WeightedGaussianFilter().kernel[0, 0] = 1.0


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfiguration:
    def test_defaults(self) -> None:
        filt = WeightedGaussianFilter()
        assert (filt.radius_y, filt.radius_x) == (1, 1)
        assert filt.sigma_y == pytest.approx(math.sqrt(2.0))
        assert filt.sigma_x == pytest.approx(math.sqrt(2.0))
        assert filt.border_type is BorderType.MIRROR
        assert filt.weighting is Weighting.CENTER_REGION

    @pytest.mark.parametrize(
        "overrides",
        [
            {"radius_y": -1},
            {"radius_x": -2},
            {"sigma_y": 0.0},
            {"sigma_x": -1.0},
            {"sigma_x": math.nan},
            {"range_sigma": 0.0},
            {"chunk_rows": 0},
            {"border_type": "reflect"},
            {"kernel": None},
        ],
    )
    def test_invalid_configuration(self, overrides: dict[str, object]) -> None:
        with pytest.raises(InvalidConfigurationError):
            WeightedGaussianFilter.create(**overrides)

    def test_reconfigure_border_keeps_kernel(self) -> None:
        filt = _make_filter(radius_y=2)
        changed = filt.reconfigure(border_type=BorderType.CIRCULAR)
        assert changed.kernel is filt.kernel
        assert changed.border_type is BorderType.CIRCULAR
        assert filt.border_type is BorderType.MIRROR

    @pytest.mark.parametrize("changes", [{"radius_x": 3}, {"sigma_y": 0.7}, {"radius_y": 0, "sigma_x": 2.0}])
    def test_reconfigure_recomputes_kernel(self, changes: dict[str, object]) -> None:
        filt = _make_filter()
        changed = filt.reconfigure(**changes)
        expected = compute_kernel(*changed.config.kernel_parameters())
        np.testing.assert_array_equal(changed.kernel, expected)
        assert filt.kernel.shape == (3, 3)

    def test_reconfigure_rejects_invalid_values(self) -> None:
        with pytest.raises(InvalidConfigurationError):
            _make_filter().reconfigure(sigma_y=-2.0)

    def test_equality(self) -> None:
        assert _make_filter(radius_x=2) == WeightedGaussianFilter(WeightedGaussianConfig(radius_x=2))
        assert _make_filter(radius_x=2) != _make_filter(radius_x=3)
        assert _make_filter() != _make_filter(weighting=Weighting.RANGE_GAUSSIAN)

    def test_from_settings(self) -> None:
        env = {"FACENORM_FILTER_RADIUS_Y": "3", "FACENORM_FILTER_BORDER": "circular"}
        with patch.dict(os.environ, env):
            settings = get_settings()
        filt = WeightedGaussianFilter.from_settings(settings)
        assert filt.radius_y == 3
        assert filt.kernel.shape == (7, 3)
        assert filt.border_type is BorderType.CIRCULAR
        assert filt.config.chunk_rows == settings.filter_chunk_rows

    def test_logs_kernel_computation(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.DEBUG, logger="facenorm"):
            _make_filter(radius_x=4)
        assert any("kernel" in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


class TestFilter:
    @pytest.mark.parametrize("border_type", list(BorderType))
    def test_constant_image_is_unchanged(self, border_type: BorderType) -> None:
        image = np.full((9, 11), 42.5)
        output = _make_filter(radius_y=2, radius_x=3, border_type=border_type).filter(image)
        np.testing.assert_allclose(output, image, rtol=1e-12)

    @pytest.mark.parametrize("weighting", list(Weighting))
    def test_constant_image_is_unchanged_for_every_weighting(self, weighting: Weighting) -> None:
        image = np.full((6, 6), 0.1)
        output = _make_filter(weighting=weighting).filter(image)
        np.testing.assert_allclose(output, image, rtol=1e-12)

    @pytest.mark.parametrize("border_type", list(BorderType))
    def test_radius_larger_than_image(self, border_type: BorderType) -> None:
        image = np.full((3, 2), 5.0)
        output = _make_filter(radius_y=4, radius_x=5, border_type=border_type).filter(image)
        np.testing.assert_allclose(output, image, rtol=1e-12)

    def test_repeated_calls_are_bit_identical(self) -> None:
        filt = _make_filter(radius_y=2, radius_x=2, weighting=Weighting.RANGE_GAUSSIAN)
        image = _make_image()
        np.testing.assert_array_equal(filt.filter(image), filt.filter(image))

    def test_zero_radius_is_identity(self) -> None:
        image = _make_image()
        np.testing.assert_array_equal(_make_filter(radius_y=0, radius_x=0).filter(image), image)

    def test_input_is_not_modified(self) -> None:
        image = _make_image()
        before = image.copy()
        _make_filter(radius_y=2).filter(image)
        np.testing.assert_array_equal(image, before)

    def test_chunking_does_not_change_result(self) -> None:
        image = _make_image(shape=(20, 9))
        whole = _make_filter(radius_y=2, chunk_rows=64).filter(image)
        rows = _make_filter(radius_y=2, chunk_rows=3).filter(image)
        np.testing.assert_allclose(rows, whole, rtol=1e-12)

    def test_smooths_noise(self) -> None:
        image = _make_image(shape=(30, 30))
        output = _make_filter(radius_y=2, radius_x=2, weighting=Weighting.RANGE_GAUSSIAN).filter(image)
        assert output.std() < image.std()
        assert output.min() >= image.min()
        assert output.max() <= image.max()

    def test_call_is_filter(self) -> None:
        filt = _make_filter()
        image = _make_image()
        np.testing.assert_array_equal(filt(image), filt.filter(image))

    @pytest.mark.parametrize("dtype", [np.uint8, np.uint16, np.int32, np.float32, np.bool_])
    def test_non_float_input_is_cast(self, dtype: type[np.generic]) -> None:
        image = (_make_image() % 2 if dtype is np.bool_ else _make_image()).astype(dtype)
        filt = _make_filter()
        output = filt.filter(image)
        assert output.dtype == np.float64
        np.testing.assert_array_equal(output, filt.filter(image.astype(np.float64)))

    def test_rejects_complex_input(self) -> None:
        with pytest.raises(UnsupportedElementTypeError):
            _make_filter().filter(np.zeros((4, 4), dtype=np.complex128))

    @pytest.mark.parametrize("shape", [(4,), (2, 2, 2, 2)])
    def test_rejects_wrong_rank(self, shape: tuple[int, ...]) -> None:
        with pytest.raises(ShapeMismatchError):
            _make_filter().filter(np.zeros(shape))

    @pytest.mark.parametrize("shape", [(0, 5), (5, 0), (2, 0, 0)])
    def test_rejects_empty_planes(self, shape: tuple[int, ...]) -> None:
        with pytest.raises(ShapeMismatchError, match="empty"):
            _make_filter().filter(np.zeros(shape))

    def test_filter_into_rejects_empty_planes(self) -> None:
        with pytest.raises(ShapeMismatchError, match="empty"):
            _make_filter().filter_into(np.zeros((0, 5)), np.zeros((0, 5)))


class TestReferenceValues:
    @pytest.mark.parametrize("border_type", list(BorderType))
    def test_center_region_matches_direct_formula(self, border_type: BorderType) -> None:
        image = _make_image(seed=11, shape=(9, 7))
        filt = _make_filter(radius_y=2, radius_x=1, sigma_y=1.5, sigma_x=1.0, border_type=border_type, chunk_rows=4)
        expected = _center_region_reference(image, filt.kernel, border_type)
        np.testing.assert_allclose(filt.filter(image), expected, rtol=1e-12)

    def test_reference_differs_from_plain_blur(self) -> None:
        image = _make_image(seed=11, shape=(9, 7))
        filt = _make_filter(radius_y=2, radius_x=1)
        padded = np.pad(image, ((2, 2), (1, 1)), mode="symmetric")
        plain = sum(
            filt.kernel[i, j] * padded[i : i + 9, j : j + 7] for i in range(5) for j in range(3)
        )
        assert not np.allclose(filt.filter(image), plain)


class TestEdgeAwareness:
    def test_step_edge_is_preserved(self) -> None:
        image = np.zeros((8, 10))
        image[:, 5:] = 100.0
        output = _make_filter(radius_y=2, radius_x=2).filter(image)
        np.testing.assert_array_equal(output[:, :5], 0.0)
        np.testing.assert_allclose(output[:, 5:], 100.0, rtol=1e-12)

    def test_range_gaussian_attenuates_across_edge(self) -> None:
        image = np.array([[0.0, 0.0, 100.0, 100.0]])
        filt = _make_filter(radius_y=0, radius_x=1, weighting=Weighting.RANGE_GAUSSIAN)
        output = filt.filter(image)
        plain_blur = filt.kernel[0, 2] * 100.0
        assert 0.0 < output[0, 1] < plain_blur

    def test_fixed_range_sigma(self) -> None:
        image = np.array([[0.0, 0.0, 100.0, 100.0]])
        soft = _make_filter(radius_y=0, radius_x=1, weighting=Weighting.RANGE_GAUSSIAN, range_sigma=1000.0)
        sharp = _make_filter(radius_y=0, radius_x=1, weighting=Weighting.RANGE_GAUSSIAN, range_sigma=1.0)
        assert soft.filter(image)[0, 1] > sharp.filter(image)[0, 1]
        assert sharp.filter(image)[0, 1] == pytest.approx(0.0, abs=1e-12)

    def test_center_and_majority_regions_differ_on_isolated_peak(self) -> None:
        image = np.array([[0.0, 100.0, 0.0]])
        center = _make_filter(radius_y=0, radius_x=1).filter(image)
        majority = _make_filter(radius_y=0, radius_x=1, weighting=Weighting.MAJORITY_REGION).filter(image)
        assert center[0, 1] == pytest.approx(100.0)
        assert majority[0, 1] == 0.0


# ---------------------------------------------------------------------------
# Plane stacks and caller buffers
# ---------------------------------------------------------------------------


class TestStacks:
    def test_stack_equals_per_plane_filtering(self) -> None:
        stack = np.stack([_make_image(1), _make_image(2)])
        filt = _make_filter(radius_y=2, radius_x=1)
        output = filt.filter(stack)
        assert output.shape == stack.shape
        for plane in range(2):
            np.testing.assert_array_equal(output[plane], filt.filter(stack[plane]))

    def test_filter_into(self) -> None:
        stack = np.stack([_make_image(1), _make_image(2)]).astype(np.uint8)
        dst = np.empty(stack.shape)
        filt = _make_filter()
        assert filt.filter_into(stack, dst) is None
        np.testing.assert_array_equal(dst, filt.filter(stack))

    def test_filter_into_allows_aliasing(self) -> None:
        image = _make_image()
        expected = _make_filter().filter(image)
        _make_filter().filter_into(image, image)
        np.testing.assert_array_equal(image, expected)

    def test_plane_count_mismatch(self) -> None:
        stack = np.stack([_make_image(1), _make_image(2)])
        dst = np.full((3, *stack.shape[1:]), -1.0)
        with pytest.raises(ShapeMismatchError, match="planes"):
            _make_filter().filter_into(stack, dst)
        assert (dst == -1.0).all()

    def test_plane_shape_mismatch(self) -> None:
        with pytest.raises(ShapeMismatchError):
            _make_filter().filter_into(np.zeros((2, 4, 4)), np.zeros((2, 4, 5)))

    def test_rank_mismatch(self) -> None:
        with pytest.raises(ShapeMismatchError):
            _make_filter().filter_into(np.zeros((4, 4)), np.zeros((1, 4, 4)))

    def test_destination_must_be_float64(self) -> None:
        with pytest.raises(UnsupportedElementTypeError):
            _make_filter().filter_into(np.zeros((4, 4)), np.zeros((4, 4), dtype=np.float32))
