class OolonError(RuntimeError):
    """Base class for every error raised by the training engine."""
    exit_code = 1


class DeviceError(OolonError):
    """A backend call or device allocation reported failure."""
    exit_code = 6


class NoDeviceError(DeviceError):
    exit_code = 2


class InvalidDeviceError(DeviceError):
    exit_code = 3


class DatasetError(OolonError):
    """Dataset files are missing, truncated or inconsistent."""
    exit_code = 4


class CheckpointError(OolonError):
    """Checkpoint could not be written, or a parameter file is corrupt."""
    exit_code = 5


class ShapeError(OolonError, ValueError):
    """A layer does not fit the layers it was linked to."""
    exit_code = 7
