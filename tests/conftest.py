"""
Pytest fixtures for tube detection tests.

Provides synthetic volumes written as header/raw pairs, host devices with
configurable limits, and kernel sets that record what the tube filter asks of them.
"""

import pytest
import numpy as np
import SimpleITK as sitk

from tube_detection.data_structures import ElementType
from tube_detection.device import DeviceCapabilities, HostDevice, ProcessingDescriptor
from tube_detection.exceptions import TransientDeviceError
from tube_detection.kernels import TubeKernels
from tube_detection.parameters import TubeDetectionParameters

SMALL_TDF = 0.25
LARGE_TDF = 0.75


class SpyKernels(TubeKernels):
    """Kernel set with constant outputs that records every call

    Small pass circle fitting (radius_min below 2.5) reports radius_min in
    the low x half and 3.0 in the high x half, with TDF SMALL_TDF. Large pass
    tube detection reports its radius_min everywhere with TDF LARGE_TDF.
    """

    def __init__(self):
        self.calls = []

    def blur(self, volume, sigma):
        self.calls.append(('blur', sigma))
        return volume.astype(np.float32)

    def create_vector_field(self, volume, fmax, sign, slabs):
        self.calls.append(('vector_field', sign))
        super().create_vector_field(volume, fmax, sign, slabs)

    def gradient_vector_flow(self, field, mu, iterations, variant='standard'):
        self.calls.append(('gvf', variant))
        return field.copy()

    def circle_fitting_tdf(self, field, radius_min, radius_max, radius_step):
        self.calls.append(('circle', radius_min, radius_max, radius_step))
        shape = field.shape[:3]
        if radius_min < 2.5:
            radius = np.full(shape, radius_min, dtype=np.float32)
            radius[:, :, shape[2] // 2:] = 3.0
            return np.full(shape, SMALL_TDF, dtype=np.float32), radius
        return (np.full(shape, LARGE_TDF, dtype=np.float32),
                np.full(shape, radius_min, dtype=np.float32))

    def spline_tdf(self, field, radius_min, radius_max, radius_step):
        self.calls.append(('spline', radius_min, radius_max, radius_step))
        shape = field.shape[:3]
        return (np.full(shape, LARGE_TDF, dtype=np.float32),
                np.full(shape, radius_min, dtype=np.float32))

    def names(self):
        return [call[0] for call in self.calls]


class FlakyKernels(SpyKernels):
    """Raises a transient device error on the first `failures` blur calls"""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.raised = 0

    def blur(self, volume, sigma):
        if self.raised < self.failures:
            self.raised += 1
            raise TransientDeviceError(f"Queue fault {self.raised}")
        return super().blur(volume, sigma)


@pytest.fixture
def write_test_volume(tmp_path):
    """Write a (z, y, x) array as a header/raw pair and return the header path"""
    def _write(data, element_type=ElementType.MET_FLOAT, spacing=(1.0, 1.0, 1.0), name='volume.mhd'):
        filename = str(tmp_path / name)
        image = sitk.GetImageFromArray(np.ascontiguousarray(data, dtype=element_type.dtype))
        image.SetSpacing(tuple(float(s) for s in spacing))
        sitk.WriteImage(image, filename, useCompression=False)
        return filename
    return _write


@pytest.fixture
def make_device():
    """HostDevice factory taking capability overrides"""
    def _make(**capability_kwargs):
        capability_kwargs.setdefault('max_alloc_bytes', 64 * 1024 * 1024)
        return HostDevice(DeviceCapabilities(**capability_kwargs))
    return _make


@pytest.fixture
def descriptor_for():
    def _resolve(device, parameters=None):
        return ProcessingDescriptor.resolve(device.capabilities, parameters or TubeDetectionParameters())
    return _resolve


@pytest.fixture
def tube_volume():
    """
    Bright tube along z on a dark background.

    Returns:
        np.ndarray: (16, 24, 24) float32 array, tube of radius 3 centered at x = y = 12
    """
    z, y, x = 16, 24, 24
    yy, xx = np.mgrid[:y, :x]
    disc = ((xx - 12) ** 2 + (yy - 12) ** 2) <= 9
    data = np.zeros((z, y, x), dtype=np.float32)
    data[:, disc] = 100.0
    return data
