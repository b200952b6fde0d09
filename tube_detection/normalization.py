import logging
import numpy as np

from .data_structures import IntensityRange, Volume

logger = logging.getLogger(__name__)

def to_float(data: np.ndarray, intensity_range: IntensityRange) -> np.ndarray:
    """Clamp samples to the intensity range and map them to [0, 1] as float32"""
    minimum = np.float32(intensity_range.minimum)
    maximum = np.float32(intensity_range.maximum)
    values = np.asarray(data, dtype=np.float32)
    if maximum <= minimum:
        logger.warning(f"Degenerate intensity range [{minimum}, {maximum}], volume normalizes to zero")
        return np.zeros(values.shape, dtype=np.float32)
    values = np.clip(values, minimum, maximum)
    return (values - minimum) / (maximum - minimum)

def normalize_volume(volume: Volume, device, descriptor):
    """Create the working float image on the device

    Written directly into the image when the device supports 3-D writes,
    otherwise staged through a linear buffer and copied.

    Returns:
        Device image allocation holding float32 intensities in (z, y, x) order
    """
    converted = to_float(volume.data, volume.intensity_range)
    shape = converted.shape
    if descriptor.use_3d_write:
        return device.create_image('converted dataset', shape, np.float32, data=converted)

    staging = device.create_buffer('converted dataset buffer', (converted.size,), np.float32)
    staging.data[:] = converted.ravel()
    image = device.create_image('converted dataset', shape, np.float32)
    device.copy_buffer_to_image(staging, image)
    device.finish()
    device.release(staging)
    return image
