"""
Placement of per-voxel vector fields under the device's allocation limit.

A vector field has four components per voxel. When it cannot be written
straight into a 3-D image it is produced into linear buffers, split in two
along z when one buffer would reach the maximum allocation size, and then
copied into the target image.
"""

import logging
from typing import List, Tuple
import numpy as np

from .data_structures import PlanMode, VectorFieldPlan
from .exceptions import DeviceAllocationError

logger = logging.getLogger(__name__)

COMPONENTS = 4

def vector_dtype(bytes_per_component: int) -> np.dtype:
    if bytes_per_component == 2:
        return np.dtype(np.int16)
    if bytes_per_component == 4:
        return np.dtype(np.float32)
    raise ValueError(f"Unsupported vector component width: {bytes_per_component}")

def plan_vector_field(dims: Tuple[int, int, int], bytes_per_component: int,
                      max_alloc_bytes: int, supports_3d_write: bool) -> VectorFieldPlan:
    """Decide how a vector field of the given (x, y, z) size is allocated

    Args:
        dims: Volume size (x, y, z)
        bytes_per_component: 2 for normalized int16, 4 for float32
        max_alloc_bytes: Device maximum single allocation size
        supports_3d_write: Whether kernels can write the target image directly

    Returns:
        VectorFieldPlan; split plans put z in [0, split_z) in the first buffer

    Raises:
        DeviceAllocationError: Not even a split into two buffers fits
    """
    x, y, z = dims
    total_voxels = x * y * z
    voxel_bytes = COMPONENTS * bytes_per_component
    required = voxel_bytes * total_voxels

    if required < max_alloc_bytes:
        return VectorFieldPlan(dims=dims, bytes_per_component=bytes_per_component,
                               max_alloc_bytes=max_alloc_bytes, mode=PlanMode.SINGLE,
                               staged=not supports_3d_write, region_voxels=(total_voxels,))

    logger.info("NOTE: Could not fit entire vector field into one buffer. Splitting buffer in two.")
    limit = max_alloc_bytes // voxel_bytes
    split_z = limit // (x * y)
    first_voxels = split_z * x * y
    second_voxels = total_voxels - first_voxels
    if split_z == 0 or second_voxels * voxel_bytes > max_alloc_bytes:
        raise DeviceAllocationError(
            f"Vector field of {required} bytes for size {x}, {y}, {z} cannot be split into two "
            f"allocations of at most {max_alloc_bytes} bytes")

    return VectorFieldPlan(dims=dims, bytes_per_component=bytes_per_component,
                           max_alloc_bytes=max_alloc_bytes, mode=PlanMode.SPLIT,
                           staged=True, split_z=split_z,
                           region_voxels=(first_voxels, second_voxels))

def allocate_targets(plan: VectorFieldPlan, device, label: str):
    """Allocate what the producing kernel writes into

    Returns:
        (image, buffers); buffers is empty for a direct write
    """
    x, y, z = plan.dims
    dtype = vector_dtype(plan.bytes_per_component)
    image = device.create_image(label, (z, y, x, COMPONENTS), dtype)
    if not plan.staged:
        return image, []
    buffers = [device.create_buffer(f"{label} buffer {i + 1}", (voxels * COMPONENTS,), dtype)
               for i, voxels in enumerate(plan.region_voxels)]
    return image, buffers

def buffer_slabs(plan: VectorFieldPlan, buffers: List) -> List[Tuple[int, np.ndarray]]:
    """(z_offset, view) pairs through which a kernel writes slices into the staging buffers"""
    x, y, z = plan.dims
    if plan.mode is PlanMode.SINGLE:
        return [(0, buffers[0].data.reshape(z, y, x, COMPONENTS))]
    split_z = plan.split_z
    return [(0, buffers[0].data.reshape(split_z, y, x, COMPONENTS)),
            (split_z, buffers[1].data.reshape(z - split_z, y, x, COMPONENTS))]

def assemble_vector_field(plan: VectorFieldPlan, device, buffers: List, image) -> None:
    """Copy filled staging buffers into the target image and release them

    The first buffer lands in z in [0, split_z), the second in [split_z, z).
    """
    if not plan.staged:
        return
    z = plan.dims[2]
    if plan.mode is PlanMode.SPLIT:
        device.copy_buffer_to_image(buffers[0], image, 0, plan.split_z)
        device.copy_buffer_to_image(buffers[1], image, plan.split_z, z - plan.split_z)
    else:
        device.copy_buffer_to_image(buffers[0], image, 0, z)
    device.finish()
    for buffer in buffers:
        device.release(buffer)
