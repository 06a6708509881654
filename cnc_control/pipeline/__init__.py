"""
Pipeline orchestration.

Owns the current image/contour snapshot, detector readiness, request
debouncing and the error boundary around generation.
"""

from cnc_control.pipeline.session import (
    DetectorNotReady,
    GenerationFailure,
    ImageNotReady,
    PipelineError,
    PipelineProgress,
    PipelineState,
    ProgramCheck,
    RequestGate,
    Session,
    Stage,
    ensure_detector_ready,
)

__all__ = [
    "DetectorNotReady",
    "GenerationFailure",
    "ImageNotReady",
    "PipelineError",
    "PipelineProgress",
    "PipelineState",
    "ProgramCheck",
    "RequestGate",
    "Session",
    "Stage",
    "ensure_detector_ready",
]
