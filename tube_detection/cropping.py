import logging
from typing import Callable, Optional, Tuple
import numpy as np

from .data_structures import CroppingResult, ElementType, Volume
from .exceptions import CroppingError
from .parameters import TubeDetectionParameters, FIXED_MARGIN_PRESET
from .volume_io import UNSIGNED_HU_OFFSET

logger = logging.getLogger(__name__)

# Fraction removed from each side in the xy plane by fixed margin cropping
MARGIN_FRACTION = 0.15

# Hounsfield limits used when counting scan lines through the lungs
LUNG_AIR_HU = -400.0
LUNG_TISSUE_HU = -150.0
LUNG_MIN_AIR_SAMPLES = 3

ScanLineCounter = Callable[[np.ndarray, int], np.ndarray]

def _scan_lines(data: np.ndarray, axis: int) -> np.ndarray:
    """View the volume as (slice, scan line, sample) for slices along an xyz axis

    Scan lines run along x, except for x slices where they run along y.
    """
    if axis == 0:
        return np.transpose(data, (2, 0, 1))
    if axis == 1:
        return np.transpose(data, (1, 0, 2))
    return data

def count_scan_lines_threshold(data: np.ndarray, axis: int, threshold: float) -> np.ndarray:
    """Number of scan lines per slice holding at least one sample above threshold"""
    lines = _scan_lines(np.asarray(data), axis)
    return np.count_nonzero(np.any(lines > threshold, axis=2), axis=1)

def count_scan_lines_lung(data: np.ndarray, axis: int, element_type: ElementType) -> np.ndarray:
    """Number of scan lines per slice that pass from tissue through air into tissue again"""
    hu = _scan_lines(np.asarray(data), axis).astype(np.float32)
    if element_type is ElementType.MET_USHORT:
        hu -= UNSIGNED_HU_OFFSET
    tissue = hu > LUNG_TISSUE_HU
    air_cumulative = np.cumsum(hu < LUNG_AIR_HU, axis=2, dtype=np.int32)
    del hu

    length = tissue.shape[2]
    has_tissue = np.any(tissue, axis=2)
    first = np.argmax(tissue, axis=2)
    last = length - 1 - np.argmax(tissue[:, :, ::-1], axis=2)
    air_between = (np.take_along_axis(air_cumulative, last[..., None], axis=2)[..., 0]
                   - np.take_along_axis(air_cumulative, first[..., None], axis=2)[..., 0])
    inside = has_tissue & (air_between >= LUNG_MIN_AIR_SAMPLES)
    return np.count_nonzero(inside, axis=1)

def default_scan_line_counter(volume: Volume, parameters: TubeDetectionParameters) -> ScanLineCounter:
    if parameters.cropping == 'lung':
        return lambda data, axis: count_scan_lines_lung(data, axis, volume.element_type)
    return lambda data, axis: count_scan_lines_threshold(data, axis, parameters.cropping_threshold)

def find_bounds(counts: np.ndarray, min_scan_lines: int) -> Tuple[int, int]:
    """Scan inward from both ends to the first slice above min_scan_lines

    The high bound is the index of the last inside slice and is used as an
    exclusive bound. Bounds that are not found stay at 0 and the full size.
    """
    size = len(counts)
    low, high = 0, size
    for slice_nr in range(size):
        if counts[slice_nr] > min_scan_lines:
            low = slice_nr
            break
    for slice_nr in range(size - 1, 0, -1):
        if counts[slice_nr] > min_scan_lines:
            high = slice_nr
            break
    return low, high

def find_z_bounds(counts: np.ndarray, min_scan_lines: int, start_z: str) -> Tuple[int, int]:
    """Find the z extent

    From the middle both scans move outward and stop at the first slice whose
    count falls below min_scan_lines. From the end both scans move inward to
    the first slice above it, and the pair is swapped afterwards.
    """
    size = len(counts)
    z1, z2 = 0, size
    if start_z == 'middle':
        start_slice = size // 2
        sign = -1
    else:
        start_slice = 0
        sign = 1

    for slice_nr in range(start_slice, size):
        if sign * counts[slice_nr] > sign * min_scan_lines:
            z2 = slice_nr
            break
    for slice_nr in range(size - start_slice - 1, 0, -1):
        if sign * counts[slice_nr] > sign * min_scan_lines:
            z1 = slice_nr
            break

    if start_z == 'end':
        z1, z2 = z2, z1
    return z1, z2

def align_bounds(low: int, high: int, size: int, lower: bool = False) -> Tuple[int, int, bool]:
    """Make high - low a multiple of 4

    Grows one voxel at a time, alternating sides, until the width is a
    multiple of 4 or the whole axis is covered. A width that still is not a
    multiple of 4 is then shrunk from the high side.

    Returns:
        (low, width, lower) where lower is the side toggle to continue with
    """
    width = high - low
    while width % 4 != 0 and width < size:
        if lower and low > 0:
            low -= 1
        elif high < size:
            high += 1
        lower = not lower
        width = high - low
    while width % 4 != 0:
        width -= 1
    return low, width, lower

def _extract(volume: Volume, offset: Tuple[int, int, int], dims: Tuple[int, int, int]) -> Volume:
    x1, y1, z1 = offset
    sx, sy, sz = dims
    data = np.array(volume.data[z1:z1 + sz, y1:y1 + sy, x1:x1 + sx], copy=True)
    return Volume(data=data, element_type=volume.element_type,
                  spacing=volume.spacing, intensity_range=volume.intensity_range)

def _check_dims(dims: Tuple[int, int, int]) -> None:
    if any(d <= 0 or d % 4 != 0 for d in dims):
        raise CroppingError(f"Invalid cropping to new size {dims[0]}, {dims[1]}, {dims[2]}")

def crop_bounding_box(volume: Volume, parameters: TubeDetectionParameters,
                      scan_line_counter: Optional[ScanLineCounter] = None) -> CroppingResult:
    """Crop to the bounding box of slices with enough occupied scan lines"""
    if parameters.cropping == 'lung':
        min_scan_lines = parameters.min_scan_lines_lung
        start_z = 'middle'
    else:
        min_scan_lines = parameters.min_scan_lines_threshold
        start_z = parameters.cropping_start_z
    counter = scan_line_counter or default_scan_line_counter(volume, parameters)

    size = volume.dims
    counts = [np.asarray(counter(volume.data, axis)) for axis in range(3)]
    x1, x2 = find_bounds(counts[0], min_scan_lines)
    y1, y2 = find_bounds(counts[1], min_scan_lines)
    z1, z2 = find_z_bounds(counts[2], min_scan_lines, start_z)

    widths = (x2 - x1, y2 - y1, z2 - z1)
    if any(w <= 0 for w in widths):
        raise CroppingError(f"Invalid cropping to new size {widths[0]}, {widths[1]}, {widths[2]}")

    lower = False
    aligned = []
    for (low, high), axis_size in zip(((x1, x2), (y1, y2), (z1, z2)), size):
        low, width, lower = align_bounds(low, high, axis_size, lower)
        aligned.append((low, width))
    (x1, sx), (y1, sy), (z1, sz) = aligned
    dims = (sx, sy, sz)
    _check_dims(dims)

    logger.info(f"Dataset cropped to {sx}, {sy}, {sz}")
    return CroppingResult(
        bounding_box=(x1, x1 + sx, y1, y1 + sy, z1, z1 + sz),
        dims=dims,
        shift_vector=(x1, y1, z1),
        volume=_extract(volume, (x1, y1, z1), dims)
    )

def crop_fixed_margin(volume: Volume) -> CroppingResult:
    """Remove a fixed share of the extent on each side in the xy plane"""
    x, y, z = volume.dims
    margin_x = int(np.floor(x * MARGIN_FRACTION + 0.5))
    margin_y = int(np.floor(y * MARGIN_FRACTION + 0.5))
    dims = tuple(d - d % 4 for d in (x - 2 * margin_x, y - 2 * margin_y, z))
    _check_dims(dims)

    logger.info(f"NOTE: reduced size to {dims[0]}, {dims[1]}, {dims[2]}")
    offset = (margin_x, margin_y, 0)
    return CroppingResult(
        bounding_box=(margin_x, margin_x + dims[0], margin_y, margin_y + dims[1], 0, dims[2]),
        dims=dims,
        shift_vector=offset,
        volume=_extract(volume, offset, dims)
    )

def trim_to_multiple_of_four(volume: Volume) -> CroppingResult:
    """Trim the high side of every axis so all dimensions are multiples of 4"""
    size = volume.dims
    dims = tuple(d - d % 4 for d in size)
    _check_dims(dims)

    if dims == size:
        cropped = volume
    else:
        logger.info(f"NOTE: reduced size to {dims[0]}, {dims[1]}, {dims[2]}")
        cropped = _extract(volume, (0, 0, 0), dims)
    return CroppingResult(
        bounding_box=(0, dims[0], 0, dims[1], 0, dims[2]),
        dims=dims,
        shift_vector=(0, 0, 0),
        volume=cropped
    )

def crop_volume(volume: Volume, parameters: TubeDetectionParameters,
                scan_line_counter: Optional[ScanLineCounter] = None) -> CroppingResult:
    """Apply the cropping policy selected by the parameters

    Args:
        volume: Loaded volume
        parameters: Run parameters ('cropping' and the preset name select the policy)
        scan_line_counter: Optional replacement for the per-slice occupancy count,
            called as counter(data, axis) with axis 0, 1, 2 for x, y, z

    Returns:
        CroppingResult whose dimensions are positive multiples of 4

    Raises:
        CroppingError: The policy produced an empty or degenerate volume
    """
    if parameters.cropping in ('lung', 'threshold'):
        logger.info("performing cropping")
        return crop_bounding_box(volume, parameters, scan_line_counter)
    if parameters.parameters == FIXED_MARGIN_PRESET:
        return crop_fixed_margin(volume)
    return trim_to_multiple_of_four(volume)
