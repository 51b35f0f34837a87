"""
Layer 1 — Geometry and detection records
Normalized quadrilaterals, per-frame detection candidates/results and the
immutable detection configuration shared by a scanning session.

Coordinates are normalized to [0, 1] with the origin at the top-left corner of
the frame and y growing downward (OpenCV image convention).
"""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..error_handlers import ConfigurationError

Point = Tuple[float, float]


@dataclass(frozen=True)
class Quadrilateral:
    """Four named document corners. Corner identity never changes between frames."""
    top_left: Point
    top_right: Point
    bottom_left: Point
    bottom_right: Point

    def corners(self) -> Tuple[Point, Point, Point, Point]:
        """Corners in fixed identity order: TL, TR, BL, BR."""
        return (self.top_left, self.top_right, self.bottom_left, self.bottom_right)

    def area(self) -> float:
        """
        Polygon area via the shoelace formula.

        Walks the corners in a fixed winding (BL, BR, TR, TL) so the result is
        independent of the frame's axis orientation.
        """
        ring = [self.bottom_left, self.bottom_right, self.top_right, self.top_left]
        total = 0.0
        for i in range(4):
            x1, y1 = ring[i]
            x2, y2 = ring[(i + 1) % 4]
            total += x1 * y2 - x2 * y1
        return abs(total) / 2.0

    def within_tolerance(self, reference: "Quadrilateral", tolerance: float) -> bool:
        """True iff every corner moved at most `tolerance` on both axes."""
        for (cx, cy), (rx, ry) in zip(self.corners(), reference.corners()):
            if abs(cx - rx) > tolerance or abs(cy - ry) > tolerance:
                return False
        return True

    def smoothed_towards(self, current: "Quadrilateral", alpha: float) -> "Quadrilateral":
        """
        Exponential moving average step from this (previous) quad towards `current`.

        Computed as prev + alpha * (cur - prev), which equals
        alpha * cur + (1 - alpha) * prev and leaves a constant input unchanged.
        """
        def blend(prev: Point, cur: Point) -> Point:
            return (
                prev[0] + alpha * (cur[0] - prev[0]),
                prev[1] + alpha * (cur[1] - prev[1]),
            )

        return Quadrilateral(
            top_left=blend(self.top_left, current.top_left),
            top_right=blend(self.top_right, current.top_right),
            bottom_left=blend(self.bottom_left, current.bottom_left),
            bottom_right=blend(self.bottom_right, current.bottom_right),
        )

    def to_pixels(self, width: int, height: int) -> np.ndarray:
        """Corners as float32 pixel coordinates ordered TL, TR, BR, BL (OpenCV warp order)."""
        ordered = [self.top_left, self.top_right, self.bottom_right, self.bottom_left]
        return np.array([[x * width, y * height] for x, y in ordered], dtype='float32')

    @classmethod
    def from_pixels(cls, points: np.ndarray, width: int, height: int) -> "Quadrilateral":
        """
        Build a quad from four unordered pixel points.

        Points are ordered with the sum/difference rule: TL has the smallest
        x+y, BR the largest, TR the smallest y-x, BL the largest.
        """
        pts = np.asarray(points, dtype='float32').reshape(4, 2)
        s = pts.sum(axis=1)
        diff = np.diff(pts, axis=1).ravel()

        def norm(p) -> Point:
            return (float(p[0]) / width, float(p[1]) / height)

        return cls(
            top_left=norm(pts[np.argmin(s)]),
            top_right=norm(pts[np.argmin(diff)]),
            bottom_left=norm(pts[np.argmax(diff)]),
            bottom_right=norm(pts[np.argmax(s)]),
        )

    def to_dict(self) -> Dict[str, List[float]]:
        return {
            'top_left': list(self.top_left),
            'top_right': list(self.top_right),
            'bottom_left': list(self.bottom_left),
            'bottom_right': list(self.bottom_right),
        }


@dataclass(frozen=True)
class DetectionCandidate:
    """A raw or validated detection for one frame."""
    quad: Quadrilateral
    confidence: float


@dataclass(frozen=True)
class FrameDetectionResult:
    """Per-frame output of the stability tracker."""
    smoothed_quad: Optional[Quadrilateral]
    stability: float
    should_auto_capture: bool

    def to_dict(self) -> Dict:
        """Convert to dictionary for API response."""
        return {
            'detected': self.smoothed_quad is not None,
            'corners': self.smoothed_quad.to_dict() if self.smoothed_quad else None,
            'stability': round(self.stability, 4),
            'should_auto_capture': self.should_auto_capture,
        }


NO_DETECTION = FrameDetectionResult(smoothed_quad=None, stability=0.0, should_auto_capture=False)


@dataclass(frozen=True)
class DetectionConfiguration:
    """Boundary validation and stability settings for one scanning session."""
    # Seconds the quad must stay stable before auto-capture
    stability_threshold_seconds: float = 2.0
    # Max per-axis corner movement between frames (normalized)
    position_tolerance: float = 0.03
    # Stable frames required before the timer starts
    min_consecutive_stable_frames: int = 8
    # Larger quads are treated as background/table edges
    max_area_ratio: float = 0.85
    # Corners closer than this to a frame edge risk clipping
    min_edge_margin: float = 0.02
    min_confidence: float = 0.5
    # 1.0 disables smoothing; closer to 0.0 is smoother
    smoothing_factor: float = 0.3

    def __post_init__(self):
        threshold = self.stability_threshold_seconds
        if not isinstance(threshold, (int, float)) or math.isnan(threshold) or threshold <= 0:
            raise ConfigurationError('stability_threshold_seconds', threshold, "must be > 0")
        if self.position_tolerance < 0:
            raise ConfigurationError('position_tolerance', self.position_tolerance, "must be >= 0")
        if int(self.min_consecutive_stable_frames) != self.min_consecutive_stable_frames \
                or self.min_consecutive_stable_frames < 1:
            raise ConfigurationError(
                'min_consecutive_stable_frames', self.min_consecutive_stable_frames,
                "must be an integer >= 1"
            )
        if not 0.0 < self.max_area_ratio <= 1.0:
            raise ConfigurationError('max_area_ratio', self.max_area_ratio, "must be in (0, 1]")
        if not 0.0 <= self.min_edge_margin < 0.5:
            raise ConfigurationError('min_edge_margin', self.min_edge_margin, "must be in [0, 0.5)")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigurationError('min_confidence', self.min_confidence, "must be in [0, 1]")
        if not 0.0 < self.smoothing_factor <= 1.0:
            raise ConfigurationError('smoothing_factor', self.smoothing_factor, "must be in (0, 1]")

    def to_dict(self) -> Dict:
        return {
            'stability_threshold_seconds': self.stability_threshold_seconds,
            'position_tolerance': self.position_tolerance,
            'min_consecutive_stable_frames': self.min_consecutive_stable_frames,
            'max_area_ratio': self.max_area_ratio,
            'min_edge_margin': self.min_edge_margin,
            'min_confidence': self.min_confidence,
            'smoothing_factor': self.smoothing_factor,
        }


# Tuned for handheld receipts
RECEIPT_DETECTION_CONFIGURATION = DetectionConfiguration(
    stability_threshold_seconds=2.0,
    position_tolerance=0.03,
    min_consecutive_stable_frames=8,
    max_area_ratio=0.85,
    min_edge_margin=0.02,
    min_confidence=0.5,
    smoothing_factor=0.3,
)
