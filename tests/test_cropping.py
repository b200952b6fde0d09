"""
Tests for the cropping policies.
"""

import pytest
import numpy as np

from tube_detection.cropping import (align_bounds, count_scan_lines_lung, count_scan_lines_threshold,
                                     crop_volume, find_bounds, find_z_bounds)
from tube_detection.data_structures import ElementType, IntensityRange, Volume
from tube_detection.exceptions import CroppingError
from tube_detection.parameters import TubeDetectionParameters


def make_volume(data, element_type=ElementType.MET_SHORT):
    return Volume(data=data, element_type=element_type,
                  intensity_range=IntensityRange(float(data.min()), float(data.max())))


@pytest.fixture
def block_volume():
    """24^3 volume with value 100 in x [5, 15), y [6, 14), z [6, 18), zero elsewhere"""
    data = np.zeros((24, 24, 24), dtype=np.int16)
    data[6:18, 6:14, 5:15] = 100
    return make_volume(data)


class TestFindBounds:
    """Tests for the slice scans."""

    def test_low_and_high(self):
        counts = np.array([0, 0, 5, 5, 5, 0])
        # High bound is the index of the last inside slice
        assert find_bounds(counts, 1) == (2, 4)

    def test_nothing_inside(self):
        assert find_bounds(np.zeros(7), 1) == (0, 7)

    def test_high_scan_never_reaches_slice_zero(self):
        counts = np.array([9, 0, 0, 0])
        assert find_bounds(counts, 1) == (0, 4)

    def test_z_from_middle_stops_below_minimum(self):
        counts = np.array([0, 0, 4, 4, 4, 4, 4, 0, 0, 0])
        # Scans start at z = 5 and move outward
        assert find_z_bounds(counts, 1, 'middle') == (1, 7)

    def test_z_from_end_swaps(self):
        counts = np.array([0, 0, 4, 4, 4, 4, 4, 0, 0, 0])
        assert find_z_bounds(counts, 1, 'end') == (2, 6)


class TestAlignBounds:
    """Tests for growing and shrinking bounds to a multiple of 4."""

    def test_already_aligned(self):
        assert align_bounds(4, 12, 20) == (4, 8, False)

    def test_grows_alternating_sides(self):
        # high, then low, then high
        assert align_bounds(5, 14, 24, False) == (4, 12, True)

    def test_toggle_carries_over(self):
        assert align_bounds(6, 13, 24, True) == (5, 8, False)

    def test_shrinks_when_axis_exhausted(self):
        assert align_bounds(0, 6, 6) == (0, 4, False)


class TestScanLineCounts:
    """Tests for the occupancy counters."""

    def test_threshold_counts(self, block_volume):
        data = block_volume.data
        np.testing.assert_array_equal(
            count_scan_lines_threshold(data, 2, 50)[6:18], np.full(12, 8))
        assert count_scan_lines_threshold(data, 2, 50)[0] == 0
        assert count_scan_lines_threshold(data, 0, 50)[5] == 12
        assert count_scan_lines_threshold(data, 1, 50)[6] == 12

    def test_lung_counts_tissue_air_tissue(self):
        lines = np.array([
            [0, -800, -800, -800, 0, -1000, -1000, -1000, -1000, -1000],
            [0, -800, -800, 0, -1000, -1000, -1000, -1000, -1000, -1000],
            [-1000] * 10,
            [0] * 10,
        ], dtype=np.int16)
        data = lines[np.newaxis]

        assert count_scan_lines_lung(data, 2, ElementType.MET_SHORT)[0] == 1

    def test_lung_counts_unsigned(self):
        lines = np.array([
            [0, -800, -800, -800, 0, -1000],
            [0, -800, -800, -800, 0, -1000],
        ]) + 1024
        data = lines.astype(np.uint16)[np.newaxis]

        assert count_scan_lines_lung(data, 2, ElementType.MET_USHORT)[0] == 2

    def test_lung_counts_long_lines(self):
        # More air samples per line than fit in a byte
        lines = np.full((3, 600), -800, dtype=np.int16)
        lines[0, [0, -1]] = 0
        lines[1, 0] = 0
        data = lines[np.newaxis]

        assert count_scan_lines_lung(data, 2, ElementType.MET_SHORT)[0] == 1


class TestBoundingBoxCropping:
    """Tests for threshold and lung bounding box cropping."""

    def test_threshold_from_middle(self, block_volume):
        parameters = TubeDetectionParameters(cropping='threshold', cropping_threshold=50.0)

        result = crop_volume(block_volume, parameters)

        assert result.dims == (12, 8, 16)
        assert result.shift_vector == (4, 5, 4)
        assert result.bounding_box == (4, 16, 5, 13, 4, 20)
        np.testing.assert_array_equal(result.volume.data, block_volume.data[4:20, 5:13, 4:16])

    def test_threshold_from_end(self, block_volume):
        parameters = TubeDetectionParameters(cropping='threshold', cropping_threshold=50.0,
                                             cropping_start_z='end')

        result = crop_volume(block_volume, parameters)

        assert result.dims == (12, 8, 12)
        assert result.shift_vector == (4, 5, 6)

    def test_injected_counter(self, block_volume):
        def counter(data, axis):
            counts = np.zeros(24, dtype=int)
            counts[8:16] = 10
            return counts

        parameters = TubeDetectionParameters(cropping='lung')
        result = crop_volume(block_volume, parameters, scan_line_counter=counter)

        assert all(d % 4 == 0 for d in result.dims)
        assert result.shift_vector[0] == 8

    def test_lung_always_scans_z_from_middle(self, block_volume):
        calls = []

        def counter(data, axis):
            calls.append(axis)
            return count_scan_lines_threshold(data, axis, 50)

        parameters = TubeDetectionParameters(cropping='lung', cropping_start_z='end',
                                             min_scan_lines_lung=1)
        result = crop_volume(block_volume, parameters, scan_line_counter=counter)

        assert calls == [0, 1, 2]
        assert result.shift_vector == (4, 5, 4)

    def test_empty_volume_from_end_fails(self):
        volume = make_volume(np.zeros((24, 24, 24), dtype=np.int16))
        parameters = TubeDetectionParameters(cropping='threshold', cropping_threshold=50.0,
                                             cropping_start_z='end')
        with pytest.raises(CroppingError):
            crop_volume(volume, parameters)


class TestOtherPolicies:
    """Tests for fixed margin cropping and the multiple of 4 trim."""

    def test_fixed_margin(self):
        volume = make_volume(np.arange(10 * 40 * 40, dtype=np.int16).reshape(10, 40, 40))
        parameters = TubeDetectionParameters.from_preset('AAA-Vessels-CT')

        result = crop_volume(volume, parameters)

        assert result.dims == (28, 28, 8)
        assert result.shift_vector == (6, 6, 0)
        np.testing.assert_array_equal(result.volume.data, volume.data[0:8, 6:34, 6:34])

    def test_trim(self):
        volume = make_volume(np.ones((9, 13, 10), dtype=np.int16))

        result = crop_volume(volume, TubeDetectionParameters())

        assert result.dims == (8, 12, 8)
        assert result.shift_vector == (0, 0, 0)
        assert result.volume.data.shape == (8, 12, 8)

    def test_trim_keeps_aligned_volume(self):
        volume = make_volume(np.ones((8, 8, 8), dtype=np.int16))
        assert crop_volume(volume, TubeDetectionParameters()).volume is volume

    def test_too_small_to_trim(self):
        volume = make_volume(np.ones((8, 3, 8), dtype=np.int16))
        with pytest.raises(CroppingError):
            crop_volume(volume, TubeDetectionParameters())

    @pytest.mark.parametrize('shape', [(9, 13, 10), (24, 17, 31), (4, 4, 4)])
    def test_dims_are_multiples_of_four(self, shape):
        volume = make_volume(np.ones(shape, dtype=np.int16))
        dims = crop_volume(volume, TubeDetectionParameters()).dims
        for new, old in zip(dims, volume.dims):
            assert new % 4 == 0
            assert new <= old
