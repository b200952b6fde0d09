from .parameters import TubeDetectionParameters
from .pipeline import PipelineSupervisor, run_tube_detection
