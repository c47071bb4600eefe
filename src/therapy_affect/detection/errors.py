"""Detection error taxonomy.

Resource acquisition raises :class:`PermissionDenied`,
:class:`DeviceUnavailable` or :class:`ModelLoadFailed`; each stops its
channel.  :class:`DetectionTransientError` wraps whatever one tick raised and
never leaves the orchestrator.
"""

from __future__ import annotations

from therapy_affect.models import ErrorKind


class DetectionError(Exception):
    """Base class; ``kind`` is what the session reports as ``last_error``."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value.replace("_", " "))
        self.message = str(self)


class PermissionDenied(DetectionError):
    kind = ErrorKind.PERMISSION_DENIED


class DeviceUnavailable(DetectionError):
    kind = ErrorKind.DEVICE_UNAVAILABLE


class ModelLoadFailed(DetectionError):
    kind = ErrorKind.MODEL_LOAD_FAILED


class DetectionTransientError(DetectionError):
    """A single tick failed; the loop carries on."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str = "", *, cause: BaseException | None = None) -> None:
        if cause is not None and not message:
            message = f"{type(cause).__name__}: {cause}"
        super().__init__(message)
        self.__cause__ = cause
