import dataclasses
from dataclasses import dataclass
from typing import Dict, Optional

# Presets that store CT data as unsigned 16 bit shifted by +1024 HU
UNSIGNED_REBASE_PRESETS = ('Lung-Airways-CT', 'AAA-Vessels-CT')

# Preset that crops a fixed margin in the xy plane instead of a bounding box
FIXED_MARGIN_PRESET = 'AAA-Vessels-CT'

_CHOICES = {
    'mode': ('white', 'black'),
    'cropping': ('no', 'lung', 'threshold'),
    'cropping_start_z': ('middle', 'end'),
    'device': ('gpu', 'cpu'),
}

# name: (min, max)
_NUMERIC_RANGES = {
    'radius_min': (0.5, 10.0),
    'radius_max': (1.0, 100.0),
    'radius_step': (0.1, 5.0),
    'fmax': (0.01, 1.0),
    'small_blur': (0.0, 5.0),
    'large_blur': (0.0, 5.0),
    'cropping_threshold': (-1024.0, 5000.0),
    'min_scan_lines_lung': (0, 1000),
    'min_scan_lines_threshold': (0, 1000),
    'gvf_mu': (0.001, 0.15),
    'gvf_iterations': (1, 10000),
}

@dataclass
class TubeDetectionParameters:
    """Parameters for cropping, normalization and tube detection

    Parameters:
        radius_min: float = 1.5 (voxels)
            Smallest tube radius searched. Below 2.5 enables the small radius pass.
        radius_max: float = 7.0 (voxels)
            Largest tube radius searched. Below 2.5 stops after the small radius pass.
        radius_step: float = 0.5
            Radius increment for the large radius pass.
        fmax: float = 0.1
            Gradient magnitude where the vector field saturates.
        mode: str = 'black'
            'white' for tubes brighter than background, 'black' for darker (airways).
        small_blur / large_blur: float (sigma, 0 disables)
            Gaussian blur applied before each pass builds its vector field.
        cropping: str = 'no'
            'lung' or 'threshold' bounding box cropping, or 'no'.
        cropping_threshold: float
            Sample value a scan line must exceed to count for threshold cropping.
        min_scan_lines_lung / min_scan_lines_threshold: int
            Occupancy count a slice must exceed to be inside the bounding box.
        cropping_start_z: str = 'middle'
            Where threshold cropping starts its z scans, 'middle' or 'end'.
        minimum / maximum: str = 'off'
            Explicit intensity limits, 'off' to find them from the data.
        vectors_16bit / vectors_32bit: bool
            Vector field precision for staged and direct writes respectively.
        use_fmg_gvf: bool
            Use the multigrid GVF variant.
        use_spline_tdf: bool
            Use spline based tube detection in the large radius pass.
        tdf_only: bool
            Do not transfer the vector field back to the host.
        no_segmentation: bool
            Tell downstream stages not to segment.
        timing: bool
            Log the runtime of each stage.
        timer_total: bool
            Log the runtime of the whole run.
    """
    parameters: str = 'default'
    device: str = 'gpu'
    buffers_only: bool = False
    radius_min: float = 1.5
    radius_max: float = 7.0
    radius_step: float = 0.5
    fmax: float = 0.1
    mode: str = 'black'
    small_blur: float = 1.0
    large_blur: float = 1.0
    cropping: str = 'no'
    cropping_threshold: float = -500.0
    min_scan_lines_lung: int = 6
    min_scan_lines_threshold: int = 1
    cropping_start_z: str = 'middle'
    minimum: str = 'off'
    maximum: str = 'off'
    vectors_16bit: bool = True
    vectors_32bit: bool = False
    use_fmg_gvf: bool = False
    use_spline_tdf: bool = False
    gvf_mu: float = 0.05
    gvf_iterations: int = 250
    tdf_only: bool = False
    no_segmentation: bool = False
    timing: bool = False
    timer_total: bool = False
    storage_dir: str = 'off'
    storage_name: str = 'tube_detection'

    @classmethod
    def get_parameter_sets(cls) -> Dict[str, 'TubeDetectionParameters']:
        """Get the named parameter presets"""
        return {
            'default': cls(),
            'Lung-Airways-CT': cls(
                parameters='Lung-Airways-CT',
                mode='black',
                cropping='lung',
                minimum='-1024',
                maximum='-800',   # Airway lumen is close to air
                fmax=0.1,
                radius_min=0.5,
                radius_max=25.0,
                small_blur=0.5,
                large_blur=1.0
            ),
            'AAA-Vessels-CT': cls(
                parameters='AAA-Vessels-CT',
                mode='white',
                minimum='0',
                maximum='500',    # Contrast enhanced aorta
                fmax=0.2,
                radius_min=1.5,
                radius_max=20.0,
                radius_step=1.0,
                large_blur=2.0
            ),
            'Neuro-Vessels-MRA': cls(
                parameters='Neuro-Vessels-MRA',
                mode='white',
                fmax=0.1,
                radius_min=0.5,
                radius_max=4.0,
                small_blur=0.5,
                large_blur=1.0
            ),
            'Liver-Vessels-CT': cls(
                parameters='Liver-Vessels-CT',
                mode='white',
                cropping='threshold',
                cropping_threshold=50.0,
                minimum='50',
                maximum='200',
                fmax=0.1,
                radius_min=1.5,
                radius_max=7.0,
                large_blur=1.0
            ),
            'Synthetic-Vascusynth': cls(
                parameters='Synthetic-Vascusynth',
                mode='white',
                fmax=0.2,
                radius_min=1.0,
                radius_max=5.0,
                small_blur=0.0,
                large_blur=1.0,
                use_spline_tdf=True
            )
        }

    @classmethod
    def from_dict(cls, params_dict, base: Optional['TubeDetectionParameters'] = None):
        """Create parameters from a dictionary of overrides

        Keys may use either the dashed option names or field names.
        """
        base_params = dataclasses.replace(base) if base is not None else cls()
        for key, value in params_dict.items():
            name = option_to_field(key)
            if hasattr(base_params, name):
                setattr(base_params, name, value)
        return base_params

    @classmethod
    def from_preset(cls, name: str) -> 'TubeDetectionParameters':
        presets = cls.get_parameter_sets()
        if name not in presets:
            raise ValueError(f"Unknown parameter preset: {name}")
        return presets[name]

    def get(self, option: str):
        """Read a named option, e.g. get('radius-min')"""
        name = option_to_field(option)
        if not hasattr(self, name):
            raise KeyError(f"{option} not found")
        return getattr(self, name)

    def explicit_minimum(self) -> Optional[float]:
        return None if self.minimum == 'off' else float(self.minimum)

    def explicit_maximum(self) -> Optional[float]:
        return None if self.maximum == 'off' else float(self.maximum)

    def validate(self) -> 'TubeDetectionParameters':
        for name, choices in _CHOICES.items():
            value = getattr(self, name)
            if value not in choices:
                raise ValueError(f"invalid value for {name}: {value!r} (expected one of {choices})")
        for name, (low, high) in _NUMERIC_RANGES.items():
            value = getattr(self, name)
            if not low <= value <= high:
                raise ValueError(f"invalid value for {name}: {value} (expected {low} to {high})")
        for name in ('minimum', 'maximum'):
            value = getattr(self, name)
            if value != 'off':
                try:
                    float(value)
                except (TypeError, ValueError):
                    raise ValueError(f"invalid value for {name}: {value!r}")
        if self.radius_step <= 0:
            raise ValueError("radius_step must be positive")
        return self

def option_to_field(option: str) -> str:
    """Map a dashed option name to its field name"""
    if option == '16bit-vectors':
        return 'vectors_16bit'
    if option == '32bit-vectors':
        return 'vectors_32bit'
    return option.replace('-', '_')
