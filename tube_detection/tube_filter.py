"""
Dual pass tube detection.

Small tubes are found on the plain vector field with circle fitting over
radii up to 3 voxels. Larger tubes need the vector field diffused with
gradient vector flow first. When both passes run their results are merged
per voxel.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np

from .buffer_planning import (allocate_targets, assemble_vector_field, buffer_slabs,
                              plan_vector_field)
from .data_structures import FilterState, TubeFields, VectorFieldPlan
from .device import DeviceAllocation, ProcessingDescriptor, runtime
from .kernels import TubeKernels, decode_tdf, encode_tdf
from .parameters import TubeDetectionParameters

logger = logging.getLogger(__name__)

# Radius below which the small pass result is used
SMALL_RADIUS_LIMIT = 2.5

# Radius range searched by the small pass
SMALL_PASS_MAX_RADIUS = 3.0
SMALL_PASS_RADIUS_STEP = 0.5

# Smallest radius the large pass searches
SPLINE_RADIUS_FLOOR = 1.5
CIRCLE_RADIUS_FLOOR = 2.5

@dataclass
class PassOutput:
    """TDF and radius of one pass, TDF in its stored encoding"""
    tdf: np.ndarray
    radius: np.ndarray

def merge_pass_outputs(small: Optional[PassOutput], large: PassOutput,
                       kernels: Optional[TubeKernels] = None) -> PassOutput:
    """Combine the passes per voxel, writing into the large pass output

    Voxels whose small pass radius is below SMALL_RADIUS_LIMIT take both
    values from the small pass, all others keep the large pass values.
    Without a small pass the large pass output is returned unchanged.
    """
    if small is None:
        return large
    kernels = kernels or TubeKernels()
    kernels.combine(small.tdf, small.radius, large.tdf, large.radius, SMALL_RADIUS_LIMIT)
    return large

class DualPassTubeFilter:
    """Runs the small and large radius passes on a normalized volume

    States: INIT -> SMALL_PASS (optional) -> EARLY_EXIT or LARGE_PASS ->
    MERGE (optional) -> DONE. The visited states are kept in history.
    """

    def __init__(self, device, descriptor: ProcessingDescriptor,
                 parameters: TubeDetectionParameters, kernels: Optional[TubeKernels] = None):
        self.device = device
        self.descriptor = descriptor
        self.parameters = parameters
        self.kernels = kernels or TubeKernels()
        self.state = FilterState.INIT
        self.history = [FilterState.INIT]
        self.gvf_variant = None

    @property
    def vector_sign(self) -> int:
        return -1 if self.parameters.mode == 'black' else 1

    @property
    def tdf_dtype(self):
        return np.uint16 if self.descriptor.half_precision else np.float32

    def _timed(self, stage: str):
        return runtime(self.device, stage, self.parameters.timing)

    def _transition(self, state: FilterState) -> None:
        logger.debug(f"Tube filter {self.state.name} -> {state.name}")
        self.state = state
        self.history.append(state)

    def run(self, dataset: DeviceAllocation) -> TubeFields:
        """Run tube detection

        Args:
            dataset: Device image with the normalized float volume; it is
                released once the passes no longer need it

        Returns:
            TubeFields with host arrays owned by the caller
        """
        radius_min = self.parameters.radius_min
        radius_max = self.parameters.radius_max
        small = None

        if radius_min < SMALL_RADIUS_LIMIT:
            self._transition(FilterState.SMALL_PASS)
            field, tdf, radius = self._small_pass(dataset, radius_min)

            if radius_max < SMALL_RADIUS_LIMIT:
                self._transition(FilterState.EARLY_EXIT)
                self.device.finish()
                self.device.release(dataset)
                fields = self._read_back(field, tdf, radius)
                self._transition(FilterState.DONE)
                return fields

            self.device.finish()
            self.device.release(field)
            small = PassOutput(tdf=self.device.read(tdf), radius=self.device.read(radius))
            self.device.release(tdf)
            self.device.release(radius)

        self._transition(FilterState.LARGE_PASS)
        field, tdf, radius = self._large_pass(dataset, radius_min, radius_max)

        if small is not None:
            self._transition(FilterState.MERGE)
            with self._timed('combine'):
                merge_pass_outputs(small, PassOutput(tdf=tdf.data, radius=radius.data), self.kernels)

        fields = self._read_back(field, tdf, radius)
        self._transition(FilterState.DONE)
        return fields

    def _small_pass(self, dataset: DeviceAllocation, radius_min: float):
        blurred = self._blur(dataset, self.parameters.small_blur, 'small blurred volume')
        field, _ = self._create_vector_field(blurred, 'small vector field')
        if blurred is not dataset:
            self.device.finish()
            self.device.release(blurred)

        with self._timed('TDF small'):
            tdf, radius = self.kernels.circle_fitting_tdf(
                field.data, radius_min, SMALL_PASS_MAX_RADIUS, SMALL_PASS_RADIUS_STEP)
        return (field,) + self._store_tdf(tdf, radius, 'small')

    def _large_pass(self, dataset: DeviceAllocation, radius_min: float, radius_max: float):
        blurred = self._blur(dataset, self.parameters.large_blur, 'large blurred volume')
        if blurred is not dataset:
            self.device.finish()
            self.device.release(dataset)

        initial_field, plan = self._create_vector_field(blurred, 'initial vector field')
        self.device.finish()
        self.device.release(blurred)

        self.gvf_variant = self._select_gvf_variant(plan)
        logger.info(f"Running {self.gvf_variant} GVF")
        with self._timed('GVF'):
            diffused = self.kernels.gradient_vector_flow(
                initial_field.data, self.parameters.gvf_mu, self.parameters.gvf_iterations,
                self.gvf_variant)
        field = self.device.create_image('vector field', initial_field.shape,
                                         initial_field.data.dtype, data=diffused)
        del diffused
        self.device.finish()
        self.device.release(initial_field)
        logger.info("GVF finished")

        with self._timed('TDF large'):
            if self.parameters.use_spline_tdf:
                tdf, radius = self.kernels.spline_tdf(
                    field.data, max(SPLINE_RADIUS_FLOOR, radius_min), radius_max,
                    self.parameters.radius_step)
            else:
                tdf, radius = self.kernels.circle_fitting_tdf(
                    field.data, max(CIRCLE_RADIUS_FLOOR, radius_min), radius_max,
                    self.parameters.radius_step)
        logger.info("TDF finished")
        return (field,) + self._store_tdf(tdf, radius, 'large')

    def _select_gvf_variant(self, plan: VectorFieldPlan) -> str:
        if self.parameters.use_fmg_gvf:
            return 'multigrid'
        if plan.required_bytes > self.descriptor.max_alloc_bytes:
            return 'low-memory'
        return 'standard'

    def _blur(self, volume: DeviceAllocation, sigma: float, label: str) -> DeviceAllocation:
        """Blurred copy of the volume, or the volume itself when sigma is 0"""
        if sigma <= 0:
            return volume
        with self._timed('blurring'):
            blurred = self.kernels.blur(volume.data, sigma)
        if self.descriptor.use_3d_write:
            return self.device.create_image(label, volume.shape, np.float32, data=blurred)

        staging = self.device.create_buffer(f"{label} buffer", (blurred.size,), np.float32)
        staging.data[:] = blurred.ravel()
        del blurred
        image = self.device.create_image(label, volume.shape, np.float32)
        self.device.copy_buffer_to_image(staging, image)
        self.device.finish()
        self.device.release(staging)
        return image

    def _create_vector_field(self, source: DeviceAllocation,
                             label: str) -> Tuple[DeviceAllocation, VectorFieldPlan]:
        z, y, x = source.shape
        plan = plan_vector_field((x, y, z), self.descriptor.vector_bytes,
                                 self.descriptor.max_alloc_bytes, self.descriptor.use_3d_write)
        image, buffers = allocate_targets(plan, self.device, label)
        slabs = buffer_slabs(plan, buffers) if plan.staged else [(0, image.data)]
        with self._timed('create vector field'):
            self.kernels.create_vector_field(source.data, self.parameters.fmax, self.vector_sign, slabs)
            assemble_vector_field(plan, self.device, buffers, image)
        return image, plan

    def _store_tdf(self, tdf: np.ndarray, radius: np.ndarray, name: str):
        tdf_buffer = self.device.create_buffer(f"TDF {name}", tdf.shape, self.tdf_dtype)
        tdf_buffer.data[...] = encode_tdf(tdf, self.tdf_dtype)
        radius_buffer = self.device.create_buffer(f"radius {name}", radius.shape, np.float32)
        radius_buffer.data[...] = radius
        return tdf_buffer, radius_buffer

    def _read_back(self, field: DeviceAllocation, tdf: DeviceAllocation,
                   radius: DeviceAllocation) -> TubeFields:
        """Transfer results to the host and release their device allocations"""
        vector_field = None
        if not self.parameters.tdf_only:
            vector_field = self.device.read(field)[..., :3].copy()
        fields = TubeFields(
            vector_field=vector_field,
            tdf=decode_tdf(self.device.read(tdf)),
            radius=self.device.read(radius)
        )
        for allocation in (field, tdf, radius):
            self.device.release(allocation)
        return fields
