import os
import json
import logging
import dataclasses
import numpy as np
import SimpleITK as sitk

from .data_structures import PipelineResult
from .kernels import decode_vectors

logger = logging.getLogger(__name__)

def _to_image(array: np.ndarray, result: PipelineResult, is_vector: bool = False) -> sitk.Image:
    image = sitk.GetImageFromArray(array, isVector=is_vector)
    spacing = tuple(float(s) for s in result.spacing)
    image.SetSpacing(spacing)
    image.SetOrigin(tuple(float(shift) * s for shift, s in zip(result.cropping.shift_vector, spacing)))
    return image

def save_tube_detection_results(result: PipelineResult, output_dir: str, name: str, parameters=None):
    """Save tube detection results

    Args:
        result: Successful pipeline result
        output_dir: Directory to save results
        name: File name prefix
        parameters: Optional run parameters, written next to the volumes as JSON

    Output (origin is the crop shift in physical units, so the volumes
    overlay the uncropped input):
        <name>.TDF.mhd: Tube detection response, float32 in [0, 1]
        <name>.radius.mhd: Estimated radius per voxel
        <name>.vectorField.mhd: 3-component float32 vectors (skipped with tdf-only)
        <name>.parameters.json: Parameters and crop summary
    """
    os.makedirs(output_dir, exist_ok=True)
    fields = result.fields

    # Tube detection response
    sitk.WriteImage(
        _to_image(fields.tdf.astype(np.float32), result),
        os.path.join(output_dir, f'{name}.TDF.mhd')
    )

    # Radius of the best fitting circle
    sitk.WriteImage(
        _to_image(fields.radius.astype(np.float32), result),
        os.path.join(output_dir, f'{name}.radius.mhd')
    )

    if fields.vector_field is not None:
        sitk.WriteImage(
            _to_image(decode_vectors(fields.vector_field), result, is_vector=True),
            os.path.join(output_dir, f'{name}.vectorField.mhd')
        )

    metadata = {
        'attempts': result.attempts,
        'bounding_box': list(result.cropping.bounding_box),
        'size': list(result.cropping.dims),
        'shift_vector': list(result.cropping.shift_vector),
        'spacing': list(result.spacing),
        'intensity_range': [result.intensity_range.minimum, result.intensity_range.maximum],
        'segmentation_requested': result.segmentation_requested,
        'filter_states': [state.name for state in result.filter_states],
    }
    if parameters is not None:
        metadata['parameters'] = dataclasses.asdict(parameters)
    with open(os.path.join(output_dir, f'{name}.parameters.json'), 'w') as f:
        json.dump(metadata, f, indent=2)

    logger.info(f"Tube detection results saved in {output_dir}")
