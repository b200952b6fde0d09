from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, Tuple
import numpy as np

class ElementType(Enum):
    """Sample types supported in the header's ElementType field"""
    MET_CHAR = 'MET_CHAR'
    MET_UCHAR = 'MET_UCHAR'
    MET_SHORT = 'MET_SHORT'
    MET_USHORT = 'MET_USHORT'
    MET_FLOAT = 'MET_FLOAT'

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(_ELEMENT_DTYPES[self])

_ELEMENT_DTYPES = {
    ElementType.MET_CHAR: '<i1',
    ElementType.MET_UCHAR: '<u1',
    ElementType.MET_SHORT: '<i2',
    ElementType.MET_USHORT: '<u2',
    ElementType.MET_FLOAT: '<f4',
}

class PlanMode(Enum):
    """How a vector field is laid out in device memory"""
    SINGLE = 'single'
    SPLIT = 'split'

class FilterState(Enum):
    """States of the dual pass tube filter"""
    INIT = auto()
    SMALL_PASS = auto()
    EARLY_EXIT = auto()
    LARGE_PASS = auto()
    MERGE = auto()
    DONE = auto()

@dataclass(frozen=True)
class IntensityRange:
    minimum: float
    maximum: float

@dataclass
class Volume:
    """A loaded scan volume

    Attributes:
        data: Samples in (z, y, x) order, usually a read-only memory map
        element_type: Native sample type from the header
        spacing: Voxel spacing (sx, sy, sz)
        intensity_range: Range used when normalizing to float
    """
    data: np.ndarray
    element_type: ElementType
    spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    intensity_range: Optional[IntensityRange] = None

    @property
    def dims(self) -> Tuple[int, int, int]:
        """Dimensions as (x, y, z)"""
        z, y, x = self.data.shape
        return (x, y, z)

    @property
    def total_voxels(self) -> int:
        return int(np.prod(self.data.shape))

@dataclass
class CroppingResult:
    """Outcome of cropping

    Attributes:
        bounding_box: (x1, x2, y1, y2, z1, z2) in uncropped volume voxels, high bounds exclusive
        dims: Adjusted (x, y, z) dimensions, each a positive multiple of 4
        shift_vector: (x1, y1, z1), added to cropped coordinates to get uncropped ones
        volume: The extracted sub-volume
    """
    bounding_box: Tuple[int, int, int, int, int, int]
    dims: Tuple[int, int, int]
    shift_vector: Tuple[int, int, int]
    volume: Volume

@dataclass(frozen=True)
class VectorFieldPlan:
    """Placement of a 4-component per-voxel vector field in device memory

    A split plan stores slices [0, split_z) in the first buffer and
    [split_z, z) in the second.
    """
    dims: Tuple[int, int, int]
    bytes_per_component: int
    max_alloc_bytes: int
    mode: PlanMode
    staged: bool
    split_z: Optional[int] = None
    region_voxels: Tuple[int, ...] = ()

    @property
    def total_voxels(self) -> int:
        x, y, z = self.dims
        return x * y * z

    @property
    def voxel_bytes(self) -> int:
        return 4 * self.bytes_per_component

    @property
    def required_bytes(self) -> int:
        return self.voxel_bytes * self.total_voxels

    @property
    def region_bytes(self) -> Tuple[int, ...]:
        return tuple(voxels * self.voxel_bytes for voxels in self.region_voxels)

@dataclass
class TubeFields:
    """Outputs of tube detection, in (z, y, x) order

    Attributes:
        vector_field: (z, y, x, 3) int16 normalized or float32 vectors, None when only the TDF was kept
        tdf: Tube detection response in [0, 1]
        radius: Estimated tube radius per voxel, >= 0
    """
    vector_field: Optional[np.ndarray]
    tdf: np.ndarray
    radius: np.ndarray

@dataclass(frozen=True)
class PipelineAttempt:
    """One run of the pipeline; index starts at 1"""
    index: int = 1
    max_retries: int = 2

    @property
    def can_retry(self) -> bool:
        return self.index <= self.max_retries

    def next(self) -> 'PipelineAttempt':
        return PipelineAttempt(index=self.index + 1, max_retries=self.max_retries)

@dataclass
class PipelineResult:
    """Everything a successful run hands to the caller"""
    fields: TubeFields
    cropping: CroppingResult
    spacing: Tuple[float, float, float]
    intensity_range: IntensityRange
    attempts: int
    segmentation_requested: bool = True
    filter_states: list = field(default_factory=list)
    # Parameters the run used, after any intensity rebase
    parameters: Optional[object] = None
