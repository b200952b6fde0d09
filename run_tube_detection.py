import argparse
import logging
import sys

import numpy as np

from tube_detection.exceptions import TubeDetectionError
from tube_detection.parameters import TubeDetectionParameters
from tube_detection.pipeline import run_tube_detection

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Options that take a value: (option, type, help)
VALUE_OPTIONS = [
    ('radius-min', float, 'Smallest tube radius in voxels (default: 1.5)'),
    ('radius-max', float, 'Largest tube radius in voxels (default: 7.0)'),
    ('radius-step', float, 'Radius step of the large radius pass (default: 0.5)'),
    ('fmax', float, 'Gradient magnitude where vectors saturate (default: 0.1)'),
    ('mode', str, "'white' for bright tubes, 'black' for dark tubes (default: black)"),
    ('small-blur', float, 'Blur sigma before the small radius pass, 0 disables (default: 1.0)'),
    ('large-blur', float, 'Blur sigma before the large radius pass, 0 disables (default: 1.0)'),
    ('cropping', str, "'no', 'lung' or 'threshold' (default: no)"),
    ('cropping-threshold', float, 'Sample value for threshold cropping (default: -500)'),
    ('min-scan-lines-lung', int, 'Occupied scan lines a slice needs for lung cropping (default: 6)'),
    ('min-scan-lines-threshold', int, 'Occupied scan lines a slice needs for threshold cropping (default: 1)'),
    ('cropping-start-z', str, "'middle' or 'end' (default: middle)"),
    ('minimum', str, "Intensity minimum or 'off' to find it (default: off)"),
    ('maximum', str, "Intensity maximum or 'off' to find it (default: off)"),
    ('gvf-mu', float, 'GVF regularization (default: 0.05)'),
    ('gvf-iterations', int, 'GVF iterations (default: 250)'),
    ('device', str, "'gpu' or 'cpu' (default: gpu)"),
    ('storage-dir', str, "Directory results are written to, 'off' to skip (default: off)"),
    ('storage-name', str, 'File name prefix of stored results (default: tube_detection)'),
]

FLAG_OPTIONS = [
    ('16bit-vectors', 'Use 16 bit vectors when writing through buffers'),
    ('32bit-vectors', 'Use 32 bit vectors when writing 3D images directly'),
    ('use-fmg-gvf', 'Use the multigrid GVF variant'),
    ('use-spline-tdf', 'Use spline based tube detection for large tubes'),
    ('tdf-only', 'Do not transfer the vector field back'),
    ('no-segmentation', 'Only run tube detection'),
    ('buffers-only', 'Never write 3D images directly'),
    ('timing', 'Log the runtime of each stage'),
    ('timer-total', 'Log the runtime of the whole run'),
]

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Tube detection on header/raw volumes')
    parser.add_argument('filename', type=str, help='Header file of the input volume')

    # Parameter selection options
    param_group = parser.add_argument_group('Parameter Selection')
    param_group.add_argument('--parameters', type=str, default='default',
                             choices=list(TubeDetectionParameters.get_parameter_sets().keys()),
                             help='Predefined parameter set')

    # Individual parameter overrides
    override_group = parser.add_argument_group('Parameter Overrides')
    for option, option_type, help_text in VALUE_OPTIONS:
        override_group.add_argument(f'--{option}', type=option_type, help=help_text)
    for option, help_text in FLAG_OPTIONS:
        override_group.add_argument(f'--{option}', action='store_true', default=None, help=help_text)

    args = parser.parse_args(argv)

    # Collect custom parameters if any are specified
    custom_params = {}
    for option in [o[0] for o in VALUE_OPTIONS] + [o[0] for o in FLAG_OPTIONS]:
        value = getattr(args, option.replace('-', '_'))
        if value is not None:
            custom_params[option] = value
    args.custom_params = custom_params
    return args

def build_parameters(args) -> TubeDetectionParameters:
    base = TubeDetectionParameters.from_preset(args.parameters)
    return TubeDetectionParameters.from_dict(args.custom_params, base=base).validate()

def main(argv=None):
    args = parse_args(argv)
    try:
        parameters = build_parameters(args)
    except ValueError as e:
        logger.error(f"Invalid parameters: {e}")
        return 2

    try:
        result = run_tube_detection(args.filename, parameters)
    except TubeDetectionError:
        return 1

    fields = result.fields
    x, y, z = result.cropping.dims
    print(f"Tube detection complete after {result.attempts} attempt(s)")
    print(f"Cropped size: {x} x {y} x {z}, shift {result.cropping.shift_vector}")
    print(f"TDF range: {float(np.min(fields.tdf)):.3f} - {float(np.max(fields.tdf)):.3f}")
    print(f"Voxels with TDF > 0.5: {int(np.count_nonzero(fields.tdf > 0.5))}")
    if parameters.storage_dir != 'off':
        print(f"Results saved in {parameters.storage_dir}")
    return 0

if __name__ == "__main__":
    sys.exit(main())
