"""
Custom exceptions for Petwatch
"""

__all__ = [
    "PetwatchError",
    "DeviceError",
    "CameraUnavailable",
    "CaptureError",
    "NoFrameAvailable",
    "BackendError",
    "ValidationError",
    "InvalidTransition",
    "SubjectNotFound",
    "StorageError",
    "ConfigurationError",
]


class PetwatchError(Exception):
    """Base exception for all Petwatch errors"""
    pass


class DeviceError(PetwatchError):
    """Camera permission or availability error"""
    pass


class CameraUnavailable(DeviceError):
    """Camera could not be opened (no device, denied, or no backend)"""
    pass


class CaptureError(PetwatchError):
    """Frame capture error"""
    pass


class NoFrameAvailable(CaptureError):
    """No decoded frame to snapshot (stopped, or first frame not yet decoded)"""
    pass


class BackendError(PetwatchError):
    """Inference backend error.

    ``kind`` is one of: transport, timeout, quota, auth, malformed, empty.
    """

    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    QUOTA = "quota"
    AUTH = "auth"
    MALFORMED = "malformed"
    EMPTY = "empty"

    def __init__(self, message: str, kind: str = TRANSPORT):
        super().__init__(message)
        self.kind = kind


class ValidationError(PetwatchError):
    """Invalid user input or operation"""
    pass


class InvalidTransition(ValidationError):
    """Operation not allowed in the current session phase"""
    pass


class SubjectNotFound(ValidationError):
    """Subject id does not exist in the store"""
    pass


class StorageError(PetwatchError):
    """Persistence failure"""
    pass


class ConfigurationError(PetwatchError):
    """Configuration error"""
    pass
