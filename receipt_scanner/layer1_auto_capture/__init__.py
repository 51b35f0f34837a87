"""
Layer 1 — Auto-Capture
Live document boundary detection, stability tracking and the auto-capture
state machine. Handles the camera session, per-frame validation, temporal
smoothing and single-flight still capture.
"""
from .geometry import (
    DetectionCandidate,
    DetectionConfiguration,
    FrameDetectionResult,
    Quadrilateral,
    RECEIPT_DETECTION_CONFIGURATION,
)
from .detector import BoundaryDetector, ContourQuadrilateralDetector, QuadrilateralDetector
from .stability import StabilityState, StabilityTracker
from .streamer import DetectionStreamer
from .camera import CameraSessionManager, FrameSource, OpenCVFrameSource, compute_zoom_factor
from .auto_capture import CaptureCoordinator, CapturePhase, CaptureResult, CoordinatorState

__all__ = [
    'DetectionCandidate',
    'DetectionConfiguration',
    'FrameDetectionResult',
    'Quadrilateral',
    'RECEIPT_DETECTION_CONFIGURATION',
    'BoundaryDetector',
    'ContourQuadrilateralDetector',
    'QuadrilateralDetector',
    'StabilityState',
    'StabilityTracker',
    'DetectionStreamer',
    'CameraSessionManager',
    'FrameSource',
    'OpenCVFrameSource',
    'compute_zoom_factor',
    'CaptureCoordinator',
    'CapturePhase',
    'CaptureResult',
    'CoordinatorState',
]
