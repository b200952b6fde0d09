"""
Compute device model.

The pipeline addresses memory through a device that reports its capabilities
up front and hands out tracked allocations. Linear buffers are subject to the
device's maximum single allocation size; 3-D images are not.
"""

import time
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import numpy as np

from .exceptions import DeviceAllocationError, DeviceError
from .parameters import TubeDetectionParameters

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Peak device footprint is roughly ten vector components per voxel
PEAK_COMPONENTS_PER_VOXEL = 10

@dataclass(frozen=True)
class DeviceCapabilities:
    max_alloc_bytes: int
    supports_3d_write: bool = True
    global_mem_bytes: int = 4096 * MB
    device_type: str = 'gpu'
    vendor: str = 'host'
    name: str = 'numpy'

@dataclass(frozen=True)
class ProcessingDescriptor:
    """Capability dependent choices, resolved once per run

    Attributes:
        capabilities: What the device reported
        use_3d_write: Kernels write 3-D images directly instead of staging through buffers
        vector_bytes: Bytes per vector component, 2 (normalized int16) or 4 (float32)
    """
    capabilities: DeviceCapabilities
    use_3d_write: bool
    vector_bytes: int

    @property
    def half_precision(self) -> bool:
        return self.vector_bytes == 2

    @property
    def max_alloc_bytes(self) -> int:
        return self.capabilities.max_alloc_bytes

    @classmethod
    def resolve(cls, capabilities: DeviceCapabilities,
                parameters: TubeDetectionParameters) -> 'ProcessingDescriptor':
        use_3d_write = capabilities.supports_3d_write and not parameters.buffers_only
        if use_3d_write:
            vector_bytes = 4 if parameters.vectors_32bit else 2
        else:
            vector_bytes = 2 if parameters.vectors_16bit else 4

        # 16 bit vectors are not available on CPU devices or Apple platforms
        if (parameters.device == 'cpu' or capabilities.device_type == 'cpu'
                or capabilities.vendor.startswith('Apple')):
            vector_bytes = 4

        if not use_3d_write:
            logger.info("NOTE: Writing to 3D textures is not supported on the selected device.")
            if vector_bytes == 2:
                logger.info("NOTE: Forcing the use of 16 bit buffers. This is slow, but uses half the memory.")
        else:
            logger.info(f"NOTE: Using {8 * vector_bytes} bit vectors")
        return cls(capabilities=capabilities, use_3d_write=use_3d_write, vector_bytes=vector_bytes)

    def check_peak_memory(self, total_voxels: int) -> float:
        """Log the expected peak usage and warn when it exceeds device memory"""
        peak_size = float(total_voxels) * PEAK_COMPONENTS_PER_VOXEL * self.vector_bytes
        memory_size = self.capabilities.global_mem_bytes
        logger.info(f"NOTE: Peak memory usage with current dataset size is: {peak_size / MB:.1f} MB")
        if peak_size > memory_size:
            logger.warning("WARNING: There may not be enough space available on the device to process this volume.")
            logger.warning(f"WARNING: Shrink volume with {(peak_size - memory_size) * 100.0 / peak_size:.1f}% "
                           f"({(peak_size - memory_size) / MB:.1f} MB)")
        return peak_size

class DeviceAllocation:
    """A device side buffer or image owned by an AllocationRegistry"""

    def __init__(self, label: str, data: np.ndarray, kind: str):
        self.label = label
        self.data = data
        self.kind = kind
        self.released = False

    @property
    def nbytes(self) -> int:
        return 0 if self.data is None else int(self.data.nbytes)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.data.shape

    def __repr__(self):
        state = 'released' if self.released else f'{self.nbytes} bytes'
        return f"DeviceAllocation({self.label!r}, {self.kind}, {state})"

class AllocationRegistry:
    """Tracks every live allocation so any exit path can release them all

    Usable as a context manager: leaving the block releases whatever is still
    registered, whether the block returned or raised.
    """

    def __init__(self):
        self._live: Dict[int, DeviceAllocation] = {}
        self.total_allocated = 0
        self.total_released = 0

    def register(self, allocation: DeviceAllocation) -> DeviceAllocation:
        self._live[id(allocation)] = allocation
        self.total_allocated += 1
        return allocation

    def release(self, allocation: Optional[DeviceAllocation]) -> None:
        if allocation is None or allocation.released:
            return
        self._live.pop(id(allocation), None)
        allocation.data = None
        allocation.released = True
        self.total_released += 1
        logger.debug(f"Released {allocation.label}")

    def release_all(self) -> int:
        live = list(self._live.values())
        for allocation in live:
            self.release(allocation)
        return len(live)

    @property
    def live(self):
        return list(self._live.values())

    def __len__(self):
        return len(self._live)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release_all()
        return False

class HostDevice:
    """Device that keeps its memory in numpy arrays on the host

    Commands execute immediately, so finish() is only a synchronization
    marker. Subclasses can override it to model queue faults.
    """

    def __init__(self, capabilities: Optional[DeviceCapabilities] = None):
        self.capabilities = capabilities or DeviceCapabilities(max_alloc_bytes=1024 * MB)
        self.registry = AllocationRegistry()
        self.sync_count = 0

    def describe(self):
        caps = self.capabilities
        logger.info(f"Using device: {caps.name} ({caps.device_type})")
        logger.info(f"Available memory on selected device {caps.global_mem_bytes / MB:.1f} MB")
        logger.info(f"Max alloc size: {caps.max_alloc_bytes / MB:.1f} MB")

    def create_buffer(self, label: str, shape, dtype) -> DeviceAllocation:
        """Allocate a linear buffer, limited by the maximum allocation size"""
        dtype = np.dtype(dtype)
        nbytes = int(np.prod(shape)) * dtype.itemsize
        if nbytes > self.capabilities.max_alloc_bytes:
            raise DeviceAllocationError(
                f"Buffer {label} of {nbytes} bytes exceeds the device limit of "
                f"{self.capabilities.max_alloc_bytes} bytes")
        return self.registry.register(DeviceAllocation(label, np.zeros(shape, dtype=dtype), 'buffer'))

    def create_image(self, label: str, shape, dtype, data: Optional[np.ndarray] = None) -> DeviceAllocation:
        """Allocate a 3-D image, optionally initialized from host data"""
        if data is not None:
            array = np.array(data, dtype=dtype, copy=True)
            if array.shape != tuple(shape):
                raise DeviceError(f"Image {label} expects shape {tuple(shape)}, got {array.shape}")
        else:
            array = np.zeros(shape, dtype=dtype)
        return self.registry.register(DeviceAllocation(label, array, 'image'))

    def copy_buffer_to_image(self, buffer: DeviceAllocation, image: DeviceAllocation,
                             z_offset: int = 0, depth: Optional[int] = None) -> None:
        """Copy a linear buffer into slices [z_offset, z_offset + depth) of an image"""
        self._check_live(buffer, image)
        if depth is None:
            depth = image.data.shape[0] - z_offset
        slab_shape = (depth,) + image.data.shape[1:]
        if int(np.prod(slab_shape)) != buffer.data.size:
            raise DeviceError(f"Cannot copy {buffer.label} of {buffer.data.size} elements "
                              f"into region {slab_shape} of {image.label}")
        image.data[z_offset:z_offset + depth] = buffer.data.reshape(slab_shape)

    def read(self, allocation: DeviceAllocation) -> np.ndarray:
        """Blocking read of an allocation into a new host array"""
        self._check_live(allocation)
        self.finish()
        return np.array(allocation.data, copy=True)

    def release(self, allocation: DeviceAllocation) -> None:
        self.registry.release(allocation)

    def release_all(self) -> int:
        return self.registry.release_all()

    def finish(self) -> None:
        self.sync_count += 1

    def _check_live(self, *allocations):
        for allocation in allocations:
            if allocation.released:
                raise DeviceError(f"{allocation.label} was used after it was released")

@contextmanager
def runtime(device, stage: str, enabled: bool = True):
    """Log the wall time of a stage when enabled

    The device is finished before the clock starts and before it is read, so
    queued work is charged to the stage that enqueued it.
    """
    if not enabled:
        yield
        return
    device.finish()
    start = time.perf_counter()
    yield
    device.finish()
    logger.info(f"RUNTIME of {stage}: {(time.perf_counter() - start) * 1000:.1f} ms")
