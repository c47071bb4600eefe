"""Detection runtime — resource ownership, scheduling and error policy."""

from therapy_affect.detection.errors import (
    DetectionError,
    DetectionTransientError,
    DeviceUnavailable,
    ModelLoadFailed,
    PermissionDenied,
)
from therapy_affect.detection.hub import DetectionHub, create_hub
from therapy_affect.detection.orchestrator import (
    ChannelOrchestrator,
    FacialOrchestrator,
    TranscriptOrchestrator,
    VocalOrchestrator,
)

__all__ = [
    "ChannelOrchestrator",
    "DetectionError",
    "DetectionHub",
    "DetectionTransientError",
    "DeviceUnavailable",
    "FacialOrchestrator",
    "ModelLoadFailed",
    "PermissionDenied",
    "TranscriptOrchestrator",
    "VocalOrchestrator",
    "create_hub",
]
