"""
Layer 1 — Boundary Detection
Validates the quadrilateral found in a single frame against confidence and
geometry rules. The raw quadrilateral search is delegated to a pluggable
detection capability; `ContourQuadrilateralDetector` is the OpenCV one.
"""
import logging
import math
from typing import List, Optional, Protocol

import cv2
import numpy as np

from ..error_handlers import DetectionFailureError, InvalidFrameError
from .geometry import DetectionCandidate, DetectionConfiguration, Quadrilateral

logger = logging.getLogger(__name__)


class QuadrilateralDetector(Protocol):
    """Black-box capability returning raw quadrilateral candidates for one frame."""

    def detect(self, frame: np.ndarray) -> List[DetectionCandidate]:
        """Detect document quadrilaterals in a frame.

        Args:
            frame: Input frame (BGR).

        Returns:
            Candidates, best first. May be empty.
        """
        ...


def validate_frame(frame) -> np.ndarray:
    """Raise InvalidFrameError unless `frame` is a non-empty 2-D or 3-D image array."""
    if frame is None:
        raise InvalidFrameError("no frame buffer")
    if not isinstance(frame, np.ndarray):
        raise InvalidFrameError(f"unsupported frame type {type(frame).__name__}")
    if frame.ndim not in (2, 3) or frame.size == 0:
        raise InvalidFrameError(f"unexpected frame shape {frame.shape}")
    return frame


class BoundaryDetector:
    """
    Stateless per-frame boundary validation.

    Takes the first candidate from the detection capability and rejects it when
    its confidence is too low, when it covers nearly the whole frame (background
    or table edges), or when a corner sits too close to the frame edge.
    """

    def __init__(self, detector: QuadrilateralDetector, config: DetectionConfiguration):
        self.detector = detector
        self.config = config

    def detect(self, frame: np.ndarray) -> Optional[DetectionCandidate]:
        """
        Detect and validate the document boundary in one frame.

        Returns:
            The validated candidate, or None when nothing acceptable was found.

        Raises:
            InvalidFrameError: If the frame buffer is unreadable
            DetectionFailureError: If the detection capability fails
        """
        validate_frame(frame)

        try:
            candidates = self.detector.detect(frame)
            if not candidates:
                return None

            candidate = candidates[0]
            valid = self.is_valid(candidate)
        except Exception as e:
            # Malformed candidates fail the same way as the capability itself
            raise DetectionFailureError(e) from e

        return candidate if valid else None

    def is_valid(self, candidate: DetectionCandidate) -> bool:
        """Apply the finiteness, confidence, area and edge-margin rules."""
        cfg = self.config

        values = [candidate.confidence]
        for x, y in candidate.quad.corners():
            values.extend((x, y))
        if not all(math.isfinite(v) for v in values):
            logger.debug("Rejected: non-finite confidence or corner coordinate")
            return False

        if candidate.confidence < cfg.min_confidence:
            logger.debug(f"Rejected: confidence {candidate.confidence:.2f} < {cfg.min_confidence}")
            return False

        area = candidate.quad.area()
        if area > cfg.max_area_ratio:
            logger.debug(f"Rejected: area {area:.3f} > {cfg.max_area_ratio}")
            return False

        margin = cfg.min_edge_margin
        for x, y in candidate.quad.corners():
            if x < margin or x > 1.0 - margin or y < margin or y > 1.0 - margin:
                logger.debug(f"Rejected: corner ({x:.3f}, {y:.3f}) within edge margin {margin}")
                return False

        return True


class ContourQuadrilateralDetector:
    """
    Edge/contour based document quadrilateral search.

    Confidence is the ratio between the fitted 4-point polygon and the convex
    hull of the contour it came from: a clean rectangular outline scores ~1.0.
    """

    def __init__(self,
                 processing_width=640,
                 min_area_ratio=0.05,
                 approx_epsilon=0.02,
                 max_contours=10):
        """
        Args:
            processing_width: Frames are downscaled to this width before searching
            min_area_ratio: Ignore contours smaller than this fraction of the frame
            approx_epsilon: approxPolyDP tolerance as a fraction of the perimeter
            max_contours: Number of largest contours to try
        """
        self.processing_width = processing_width
        self.min_area_ratio = min_area_ratio
        self.approx_epsilon = approx_epsilon
        self.max_contours = max_contours

    def _edges(self, frame: np.ndarray) -> np.ndarray:
        gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        edges = cv2.Canny(blurred, 50, 150)

        kernel = np.ones((5, 5), np.uint8)
        return cv2.morphologyEx(edges, cv2.MORPH_CLOSE, kernel, iterations=2)

    def detect(self, frame: np.ndarray) -> List[DetectionCandidate]:
        height, width = frame.shape[:2]
        scale = min(1.0, self.processing_width / float(width))
        if scale < 1.0:
            small = cv2.resize(frame, (int(width * scale), int(height * scale)))
        else:
            small = frame
        small_h, small_w = small.shape[:2]
        min_area = small_h * small_w * self.min_area_ratio

        contours, _ = cv2.findContours(self._edges(small), cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        contours = sorted(contours, key=cv2.contourArea, reverse=True)

        for contour in contours[:self.max_contours]:
            hull_area = cv2.contourArea(cv2.convexHull(contour))
            if hull_area <= 0 or hull_area < min_area:
                break

            peri = cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, self.approx_epsilon * peri, True)
            if len(approx) != 4 or not cv2.isContourConvex(approx):
                continue

            confidence = float(np.clip(cv2.contourArea(approx) / hull_area, 0.0, 1.0))
            quad = Quadrilateral.from_pixels(approx.reshape(4, 2), small_w, small_h)
            return [DetectionCandidate(quad=quad, confidence=confidence)]

        return []
