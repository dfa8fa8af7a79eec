from .generation import (
    GenerationRecord,
    ImageJobRequest,
    ImageJobResponse,
    PollerInfo,
    ResumeResponse,
    StatusSnapshot,
    VideoJobRequest,
    VideoJobResponse,
)

__all__ = [
    "GenerationRecord",
    "ImageJobRequest",
    "ImageJobResponse",
    "PollerInfo",
    "ResumeResponse",
    "StatusSnapshot",
    "VideoJobRequest",
    "VideoJobResponse",
]
