"""
Loading of header/raw volume pairs.
"""

import os
import logging
import dataclasses
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import numpy as np

from .data_structures import ElementType, IntensityRange, Volume
from .exceptions import FormatError, UnsupportedTypeError
from .parameters import TubeDetectionParameters, UNSIGNED_REBASE_PRESETS

logger = logging.getLogger(__name__)

# Offset between unsigned CT storage and Hounsfield units
UNSIGNED_HU_OFFSET = 1024.0

REQUIRED_FIELDS = ('ElementType', 'ElementDataFile', 'DimSize')

@dataclass
class VolumeHeader:
    element_type: ElementType
    raw_filename: str
    dims: Tuple[int, int, int]
    spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0)

@dataclass
class LoadedVolume:
    """A volume together with the parameters later stages must read

    When the intensity range is rebased, parameters is a copy carrying the
    rebased minimum and maximum; the caller's parameters are left untouched.
    """
    volume: Volume
    parameters: TubeDetectionParameters

def _read_header_fields(filename: str) -> Dict[str, str]:
    fields = {}
    try:
        with open(filename, 'r') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                separator = '=' if '=' in line else ' '
                key, _, value = line.partition(separator)
                fields[key.strip()] = value.strip()
    except OSError as e:
        raise FormatError(f"Could not read header file {filename}: {e}")
    return fields

def _parse_triple(value: str, cast, field_name: str):
    parts = value.split()
    if len(parts) < 3:
        raise FormatError(f"{field_name} needs three values, got {value!r}")
    try:
        return tuple(cast(p) for p in parts[:3])
    except ValueError:
        raise FormatError(f"Invalid {field_name} value {value!r}")

def parse_header(filename: str) -> VolumeHeader:
    """Parse a header file

    Args:
        filename: Path to the header file

    Returns:
        VolumeHeader with the raw filename resolved against the header's directory

    Raises:
        FormatError: A required field is missing or malformed
        UnsupportedTypeError: ElementType is not one of the supported types
    """
    fields = _read_header_fields(filename)
    missing = [name for name in REQUIRED_FIELDS if name not in fields]
    if missing:
        raise FormatError(f"Error reading header file {filename}. Missing fields: {', '.join(missing)}")

    type_name = fields['ElementType'].split()[0] if fields['ElementType'] else ''
    try:
        element_type = ElementType(type_name)
    except ValueError:
        raise UnsupportedTypeError(f"unsupported data type {type_name}")

    raw_name = fields['ElementDataFile'].split()[0] if fields['ElementDataFile'] else ''
    if not raw_name:
        raise FormatError(f"Error reading header file {filename}. ElementDataFile is empty")
    raw_filename = os.path.join(os.path.dirname(os.path.abspath(filename)), raw_name)

    dims = _parse_triple(fields['DimSize'], int, 'DimSize')
    if any(d <= 0 for d in dims):
        raise FormatError(f"DimSize must be positive, got {dims}")

    spacing = (1.0, 1.0, 1.0)
    if 'ElementSpacing' in fields:
        spacing = _parse_triple(fields['ElementSpacing'], float, 'ElementSpacing')

    return VolumeHeader(element_type=element_type, raw_filename=raw_filename,
                        dims=dims, spacing=spacing)

def map_raw_file(header: VolumeHeader) -> np.ndarray:
    """Memory map the raw samples as a read-only (z, y, x) array"""
    x, y, z = header.dims
    dtype = header.element_type.dtype
    expected = x * y * z * dtype.itemsize
    try:
        actual = os.path.getsize(header.raw_filename)
    except OSError as e:
        raise FormatError(f"Could not open raw file {header.raw_filename}: {e}")
    if actual < expected:
        raise FormatError(f"Raw file {header.raw_filename} has {actual} bytes, expected {expected}")
    return np.memmap(header.raw_filename, dtype=dtype, mode='r', shape=(z, y, x))

def get_limits(data: np.ndarray, parameters: TubeDetectionParameters) -> IntensityRange:
    """Resolve the intensity range, scanning the samples for any limit not given explicitly"""
    minimum = parameters.explicit_minimum()
    if minimum is None:
        logger.info("NOTE: minimum parameter not set, finding minimum automatically.")
        minimum = float(np.min(data))
        logger.info(f"NOTE: minimum found to be {minimum}")

    maximum = parameters.explicit_maximum()
    if maximum is None:
        logger.info("NOTE: maximum parameter not set, finding maximum automatically.")
        maximum = float(np.max(data))
        logger.info(f"NOTE: maximum found to be {maximum}")

    return IntensityRange(minimum=minimum, maximum=maximum)

def rebase_intensity_range(intensity_range: IntensityRange, element_type: ElementType,
                           parameters: TubeDetectionParameters) -> Optional[IntensityRange]:
    """Return the range shifted into unsigned CT storage, or None when no rebase applies"""
    if element_type is not ElementType.MET_USHORT or parameters.parameters not in UNSIGNED_REBASE_PRESETS:
        return None
    return IntensityRange(minimum=intensity_range.minimum + UNSIGNED_HU_OFFSET,
                          maximum=intensity_range.maximum + UNSIGNED_HU_OFFSET)

def load_volume(filename: str, parameters: TubeDetectionParameters) -> LoadedVolume:
    """Load a header/raw pair and determine its intensity range

    Args:
        filename: Path to the header file
        parameters: Run parameters, read for minimum/maximum and the preset name

    Returns:
        LoadedVolume; its parameters carry the rebased range when a rebase applied
    """
    header = parse_header(filename)
    data = map_raw_file(header)

    intensity_range = get_limits(data, parameters)
    rebased = rebase_intensity_range(intensity_range, header.element_type, parameters)
    if rebased is not None:
        logger.info(f"NOTE: unsigned data with preset {parameters.parameters}, "
                    f"intensity range rebased to [{rebased.minimum}, {rebased.maximum}]")
        intensity_range = rebased
        parameters = dataclasses.replace(parameters,
                                         minimum=f"{rebased.minimum:f}",
                                         maximum=f"{rebased.maximum:f}")

    x, y, z = header.dims
    logger.info(f"Dataset of size {x} {y} {z} loaded")
    volume = Volume(data=data, element_type=header.element_type,
                    spacing=header.spacing, intensity_range=intensity_range)
    return LoadedVolume(volume=volume, parameters=parameters)
