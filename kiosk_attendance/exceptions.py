class AttendanceError(Exception):
    """Base exception for the kiosk attendance system."""


class ConfigurationError(AttendanceError):
    """Raised when the kiosk session cannot run at all (fatal to the session)."""


class CameraError(ConfigurationError):
    """Raised when the camera cannot be opened or permission is denied."""


class DetectionTransientError(AttendanceError):
    """Raised when a single frame read, face detection or descriptor extraction fails."""


class DatabaseError(AttendanceError):
    """Raised when database operations fail."""


class StorageWriteFailure(DatabaseError):
    """Raised when an attendance record could not be appended to the store."""


class PersonNotFoundError(AttendanceError):
    """Raised when an administrative operation names a person that is not enrolled."""
