"""
Tests for conversion of volumes to the working float image.
"""

import numpy as np

from tube_detection.data_structures import ElementType, IntensityRange, Volume
from tube_detection.normalization import normalize_volume, to_float
from tube_detection.parameters import TubeDetectionParameters


class TestToFloat:
    """Tests for to_float."""

    def test_maps_range_to_unit_interval(self):
        data = np.array([-1024, -1000, -900, -800, 0], dtype=np.int16)
        result = to_float(data, IntensityRange(-1000.0, -800.0))

        assert result.dtype == np.float32
        np.testing.assert_allclose(result, [0.0, 0.0, 0.5, 1.0, 1.0])

    def test_degenerate_range(self):
        data = np.array([1, 2, 3], dtype=np.uint8)
        result = to_float(data, IntensityRange(2.0, 2.0))
        np.testing.assert_array_equal(result, np.zeros(3, dtype=np.float32))


class TestNormalizeVolume:
    """Tests for normalize_volume on direct and staged devices."""

    def make_volume(self):
        data = np.arange(4 * 4 * 8, dtype=np.uint8).reshape(4, 4, 8)
        return Volume(data=data, element_type=ElementType.MET_UCHAR,
                      intensity_range=IntensityRange(0.0, 127.0))

    def test_direct_write(self, make_device, descriptor_for):
        device = make_device()
        descriptor = descriptor_for(device)
        volume = self.make_volume()

        image = normalize_volume(volume, device, descriptor)

        assert image.kind == 'image'
        assert image.shape == (4, 4, 8)
        np.testing.assert_allclose(image.data, volume.data / 127.0, rtol=1e-6)
        assert len(device.registry) == 1

    def test_staged_write_matches_direct(self, make_device, descriptor_for):
        volume = self.make_volume()
        direct_device = make_device()
        direct = normalize_volume(volume, direct_device, descriptor_for(direct_device))

        staged_device = make_device(supports_3d_write=False)
        descriptor = descriptor_for(staged_device)
        staged = normalize_volume(volume, staged_device, descriptor)

        assert not descriptor.use_3d_write
        np.testing.assert_array_equal(staged.data, direct.data)
        # Only the image survives, the staging buffer is released
        assert staged_device.registry.live == [staged]
        assert staged_device.registry.total_allocated == 2

    def test_buffers_only(self, make_device, descriptor_for):
        device = make_device()
        descriptor = descriptor_for(device, TubeDetectionParameters(buffers_only=True))
        assert not descriptor.use_3d_write
        normalize_volume(self.make_volume(), device, descriptor)
        assert device.registry.total_allocated == 2
