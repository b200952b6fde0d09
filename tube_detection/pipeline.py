import os
import logging
from typing import Callable, Optional

from .cropping import ScanLineCounter, crop_volume
from .data_structures import PipelineAttempt, PipelineResult
from .device import MB, DeviceCapabilities, HostDevice, ProcessingDescriptor, runtime
from .exceptions import DeviceError, RetryBudgetExceededError, TransientDeviceError
from .kernels import TubeKernels
from .normalization import normalize_volume
from .parameters import TubeDetectionParameters
from .postprocessing import save_tube_detection_results
from .tube_filter import DualPassTubeFilter
from .volume_io import load_volume

logger = logging.getLogger(__name__)

def default_device_factory(parameters: TubeDetectionParameters) -> HostDevice:
    return HostDevice(DeviceCapabilities(max_alloc_bytes=1024 * MB, device_type=parameters.device))

class PipelineSupervisor:
    """Runs load, crop, normalize and tube detection for one dataset

    A transient device error releases every allocation and restarts the run
    from loading, at most max_retries more times. Any other device error
    releases everything and propagates. Nothing partial is returned.
    """

    def __init__(self, parameters: TubeDetectionParameters,
                 device_factory: Callable[[TubeDetectionParameters], HostDevice] = default_device_factory,
                 kernels: Optional[TubeKernels] = None,
                 scan_line_counter: Optional[ScanLineCounter] = None,
                 max_retries: int = 2):
        self.parameters = parameters.validate()
        self.device_factory = device_factory
        self.kernels = kernels or TubeKernels()
        self.scan_line_counter = scan_line_counter
        self.max_retries = max_retries
        self.device = None

    def run(self, filename: str) -> PipelineResult:
        attempt = PipelineAttempt(max_retries=self.max_retries)
        while True:
            try:
                return self._run_attempt(filename, attempt)
            except TransientDeviceError as e:
                self._teardown()
                if not attempt.can_retry:
                    logger.error(f"Attempt {attempt.index} failed, no retries left: {e}")
                    raise RetryBudgetExceededError(attempt.index, e) from e
                logger.warning(f"Attempt {attempt.index} failed with a transient device error: {e}. Retrying...")
                attempt = attempt.next()
            except DeviceError:
                self._teardown()
                raise

    def _teardown(self):
        if self.device is not None:
            released = self.device.release_all()
            if released:
                logger.info(f"Released {released} device allocations")

    def _run_attempt(self, filename: str, attempt: PipelineAttempt) -> PipelineResult:
        logger.info(f"Starting tube detection (attempt {attempt.index})")
        self.device = self.device_factory(self.parameters)
        self.device.describe()
        descriptor = ProcessingDescriptor.resolve(self.device.capabilities, self.parameters)

        with runtime(self.device, 'total', self.parameters.timer_total), self.device.registry:
            # Step 1: Load
            logger.info("Step 1: Loading volume...")
            loaded = load_volume(filename, self.parameters)
            parameters = loaded.parameters

            # Step 2: Crop
            logger.info("Step 2: Cropping...")
            with runtime(self.device, 'cropping', parameters.timing):
                cropping = crop_volume(loaded.volume, parameters, self.scan_line_counter)
            volume = cropping.volume

            # Step 3: Normalize
            logger.info("Step 3: Converting to float...")
            with runtime(self.device, 'data transfer', parameters.timing):
                dataset = normalize_volume(volume, self.device, descriptor)
            descriptor.check_peak_memory(volume.total_voxels)

            # Step 4: Tube detection
            logger.info("Step 4: Running tube detection...")
            tube_filter = DualPassTubeFilter(self.device, descriptor, parameters, self.kernels)
            fields = tube_filter.run(dataset)

        logger.info("Tube detection completed successfully.")
        return PipelineResult(
            fields=fields,
            cropping=cropping,
            spacing=volume.spacing,
            intensity_range=volume.intensity_range,
            attempts=attempt.index,
            segmentation_requested=not parameters.no_segmentation,
            filter_states=list(tube_filter.history),
            parameters=parameters
        )

def run_tube_detection(filename: str, parameters: TubeDetectionParameters,
                       **supervisor_kwargs) -> PipelineResult:
    """Run tube detection on a header/raw volume and save the results when requested

    Args:
        filename: Path to the header file
        parameters: Run parameters; with storage_dir set, results and a log
            file are written there
        **supervisor_kwargs: Passed on to PipelineSupervisor

    Returns:
        PipelineResult
    """
    file_handler = None
    if parameters.storage_dir != 'off':
        os.makedirs(parameters.storage_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(parameters.storage_dir, 'tube_detection.log'))
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(file_handler)

    try:
        supervisor = PipelineSupervisor(parameters, **supervisor_kwargs)
        result = supervisor.run(filename)
        if parameters.storage_dir != 'off':
            save_tube_detection_results(result, parameters.storage_dir, parameters.storage_name,
                                        result.parameters)
        return result

    except Exception as e:
        logger.error(f"Error during tube detection: {str(e)}")
        raise
    finally:
        if file_handler is not None:
            logging.getLogger().removeHandler(file_handler)
            file_handler.close()
