"""
Tests for the device model and allocation tracking.
"""

import logging

import pytest
import numpy as np

from tube_detection.device import (MB, AllocationRegistry, DeviceAllocation, DeviceCapabilities,
                                   HostDevice, ProcessingDescriptor, runtime)
from tube_detection.exceptions import DeviceAllocationError, DeviceError
from tube_detection.parameters import TubeDetectionParameters


class TestProcessingDescriptor:
    """Tests for ProcessingDescriptor.resolve."""

    @pytest.mark.parametrize('supports_3d_write,buffers_only,v16,v32,expected_write,expected_bytes', [
        (True, False, True, False, True, 2),
        (True, False, True, True, True, 4),
        (False, False, True, False, False, 2),
        (False, False, False, False, False, 4),
        (True, True, True, False, False, 2),
        (True, True, False, True, False, 4),
    ])
    def test_vector_width(self, supports_3d_write, buffers_only, v16, v32, expected_write, expected_bytes):
        capabilities = DeviceCapabilities(max_alloc_bytes=MB, supports_3d_write=supports_3d_write)
        parameters = TubeDetectionParameters(buffers_only=buffers_only, vectors_16bit=v16, vectors_32bit=v32)

        descriptor = ProcessingDescriptor.resolve(capabilities, parameters)

        assert descriptor.use_3d_write == expected_write
        assert descriptor.vector_bytes == expected_bytes

    def test_cpu_device_forces_32_bit(self):
        capabilities = DeviceCapabilities(max_alloc_bytes=MB, device_type='cpu')
        descriptor = ProcessingDescriptor.resolve(capabilities, TubeDetectionParameters())
        assert descriptor.vector_bytes == 4
        assert not descriptor.half_precision

    def test_cpu_option_forces_32_bit(self):
        capabilities = DeviceCapabilities(max_alloc_bytes=MB)
        descriptor = ProcessingDescriptor.resolve(capabilities, TubeDetectionParameters(device='cpu'))
        assert descriptor.vector_bytes == 4

    def test_apple_forces_32_bit(self):
        capabilities = DeviceCapabilities(max_alloc_bytes=MB, supports_3d_write=False, vendor='Apple')
        descriptor = ProcessingDescriptor.resolve(capabilities, TubeDetectionParameters())
        assert descriptor.vector_bytes == 4

    def test_peak_memory_warning(self, caplog):
        capabilities = DeviceCapabilities(max_alloc_bytes=MB, global_mem_bytes=MB)
        descriptor = ProcessingDescriptor.resolve(capabilities, TubeDetectionParameters())

        with caplog.at_level(logging.WARNING):
            peak = descriptor.check_peak_memory(128 * 128 * 128)

        assert peak == 128 * 128 * 128 * 10 * 2
        assert 'not be enough space' in caplog.text


class TestAllocationRegistry:
    """Tests for AllocationRegistry."""

    def test_release_all(self):
        registry = AllocationRegistry()
        allocations = [registry.register(DeviceAllocation(f'a{i}', np.zeros(4), 'buffer')) for i in range(3)]
        registry.release(allocations[0])

        assert registry.release_all() == 2
        assert len(registry) == 0
        assert all(a.released and a.data is None for a in allocations)
        assert registry.total_released == 3

    def test_release_twice_is_harmless(self):
        registry = AllocationRegistry()
        allocation = registry.register(DeviceAllocation('a', np.zeros(4), 'buffer'))
        registry.release(allocation)
        registry.release(allocation)
        assert registry.total_released == 1

    def test_context_releases_on_error(self):
        registry = AllocationRegistry()
        with pytest.raises(RuntimeError):
            with registry:
                registry.register(DeviceAllocation('a', np.zeros(4), 'buffer'))
                raise RuntimeError("kernel failed")
        assert len(registry) == 0


class TestHostDevice:
    """Tests for HostDevice."""

    def test_buffer_limit(self):
        device = HostDevice(DeviceCapabilities(max_alloc_bytes=100))
        device.create_buffer('fits', (25,), np.float32)
        with pytest.raises(DeviceAllocationError):
            device.create_buffer('too large', (26,), np.float32)

    def test_images_are_not_limited(self):
        device = HostDevice(DeviceCapabilities(max_alloc_bytes=100))
        image = device.create_image('image', (4, 4, 4), np.float32)
        assert image.nbytes == 256

    def test_copy_buffer_into_region(self):
        device = HostDevice()
        image = device.create_image('image', (4, 2, 2), np.float32)
        buffer = device.create_buffer('buffer', (8,), np.float32)
        buffer.data[:] = np.arange(8)

        device.copy_buffer_to_image(buffer, image, z_offset=2, depth=2)

        np.testing.assert_array_equal(image.data[2:].ravel(), np.arange(8))
        assert not image.data[:2].any()

    def test_copy_size_mismatch(self):
        device = HostDevice()
        image = device.create_image('image', (4, 2, 2), np.float32)
        buffer = device.create_buffer('buffer', (7,), np.float32)
        with pytest.raises(DeviceError):
            device.copy_buffer_to_image(buffer, image)

    def test_read_is_a_copy(self):
        device = HostDevice()
        image = device.create_image('image', (2, 2, 2), np.float32, data=np.ones((2, 2, 2)))
        host = device.read(image)
        device.release(image)

        assert host.sum() == 8
        assert device.sync_count == 1

    def test_use_after_release(self):
        device = HostDevice()
        image = device.create_image('image', (2, 2, 2), np.float32)
        device.release(image)
        with pytest.raises(DeviceError):
            device.read(image)

    def test_image_shape_mismatch(self):
        device = HostDevice()
        with pytest.raises(DeviceError):
            device.create_image('image', (2, 2, 2), np.float32, data=np.ones((2, 2)))


class TestRuntime:
    """Tests for the stage timer."""

    def test_logs_and_finishes_device(self, caplog):
        device = HostDevice()
        with caplog.at_level(logging.INFO, logger='tube_detection.device'):
            with runtime(device, 'blurring'):
                pass

        assert device.sync_count == 2
        assert 'RUNTIME of blurring:' in caplog.text
        assert caplog.text.rstrip().endswith('ms')

    def test_disabled(self, caplog):
        device = HostDevice()
        with caplog.at_level(logging.INFO, logger='tube_detection.device'):
            with runtime(device, 'blurring', enabled=False):
                pass

        assert device.sync_count == 0
        assert 'RUNTIME' not in caplog.text
