"""Errors raised by the tube detection pipeline."""


class TubeDetectionError(Exception):
    """Base class for all pipeline errors"""


class FormatError(TubeDetectionError):
    """Header is unreadable or lacks a required field"""


class UnsupportedTypeError(FormatError):
    """Header declares an element type the loader cannot handle"""


class CroppingError(TubeDetectionError):
    """Cropping produced an empty or degenerate volume"""


class DeviceError(TubeDetectionError):
    """Any failure reported by the compute device"""


class DeviceAllocationError(DeviceError):
    """A required allocation cannot be placed on the device, not even split"""


class TransientDeviceError(DeviceError):
    """Recoverable device queue fault; the whole pipeline may be retried"""


class RetryBudgetExceededError(TransientDeviceError):
    """Transient device errors persisted through every allowed attempt"""

    def __init__(self, attempts: int, last_error: Exception = None):
        super().__init__(f"Transient device error persisted after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
