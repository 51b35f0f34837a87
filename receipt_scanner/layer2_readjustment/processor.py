"""
Layer 2 – Image Readjustment
Responsibility: Prepare a captured still for downstream OCR/extraction
Output: Perspective-corrected image (or the raw image) plus a flag telling
whether a document boundary was found
"""
import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from ..error_handlers import DetectionFailureError, InvalidImageError
from ..layer1_auto_capture.detector import BoundaryDetector
from ..layer1_auto_capture.geometry import Quadrilateral

logger = logging.getLogger(__name__)


@dataclass
class PreparedDocument:
    """Still image ready for the extraction collaborators."""
    image: np.ndarray
    image_bytes: bytes
    rectangle_detected: bool
    quad: Optional[Quadrilateral] = None

    def to_dict(self):
        height, width = self.image.shape[:2]
        return {
            'rectangle_detected': self.rectangle_detected,
            'corners': self.quad.to_dict() if self.quad else None,
            'width': width,
            'height': height,
        }


class DocumentProcessor:
    """
    Single-shot boundary detection and perspective correction for captured stills.

    Uses the same BoundaryDetector rules as the live preview but keeps no
    state between calls. Falls back to the raw image when no boundary is found.
    """

    def __init__(self,
                 boundary_detector: BoundaryDetector,
                 min_output_width=400,
                 min_output_height=300,
                 jpeg_quality=90):
        """
        Args:
            boundary_detector: Detector used on the still
            min_output_width: Minimum warped width in pixels
            min_output_height: Minimum warped height in pixels
            jpeg_quality: JPEG quality of the prepared output
        """
        self.boundary_detector = boundary_detector
        self.min_output_width = min_output_width
        self.min_output_height = min_output_height
        self.jpeg_quality = jpeg_quality

        logger.info("DocumentProcessor initialized")

    def prepare(self, image_bytes: bytes) -> PreparedDocument:
        """
        Decode, detect and flatten a captured still.

        Raises:
            InvalidImageError: If the bytes cannot be decoded
        """
        image = self._decode(image_bytes)

        try:
            candidate = self.boundary_detector.detect(image)
        except DetectionFailureError as e:
            logger.warning(f"Still detection failed, using raw image: {e.message}")
            candidate = None

        if candidate is None:
            logger.info("No document boundary on still, passing raw image through")
            return PreparedDocument(
                image=image,
                image_bytes=image_bytes,
                rectangle_detected=False,
            )

        warped = self.correct_perspective(image, candidate.quad)
        return PreparedDocument(
            image=warped,
            image_bytes=self._encode(warped),
            rectangle_detected=True,
            quad=candidate.quad,
        )

    def _decode(self, image_bytes: bytes) -> np.ndarray:
        if not image_bytes:
            raise InvalidImageError()
        buffer = np.frombuffer(image_bytes, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if image is None:
            raise InvalidImageError()
        return image

    def _encode(self, image: np.ndarray) -> bytes:
        ok, buffer = cv2.imencode('.jpg', image, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if not ok:
            raise InvalidImageError()
        return buffer.tobytes()

    def correct_perspective(self, image: np.ndarray, quad: Quadrilateral) -> np.ndarray:
        """
        Warp the quadrilateral region to a flat rectangle.

        Output size follows the longer of each pair of opposite edges.
        """
        height, width = image.shape[:2]
        rect = quad.to_pixels(width, height)
        (tl, tr, br, bl) = rect

        out_width = int(max(np.linalg.norm(tr - tl), np.linalg.norm(br - bl)))
        out_height = int(max(np.linalg.norm(bl - tl), np.linalg.norm(br - tr)))
        out_width = max(out_width, self.min_output_width)
        out_height = max(out_height, self.min_output_height)

        dst = np.array([
            [0, 0],
            [out_width - 1, 0],
            [out_width - 1, out_height - 1],
            [0, out_height - 1]
        ], dtype=np.float32)

        M = cv2.getPerspectiveTransform(rect, dst)
        warped = cv2.warpPerspective(image, M, (out_width, out_height))

        logger.debug(f"Perspective corrected to {out_width}x{out_height}")
        return warped
