"""
Tests for still-image preparation (perspective correction).
"""
import cv2
import numpy as np
import pytest

from receipt_scanner.conftest import ScriptedQuadDetector, make_candidate
from receipt_scanner.error_handlers import InvalidImageError
from receipt_scanner.layer1_auto_capture import BoundaryDetector, DetectionConfiguration
from receipt_scanner.layer2_readjustment import DocumentProcessor


def encode(image):
    ok, buffer = cv2.imencode('.jpg', image)
    assert ok
    return buffer.tobytes()


def processor_for(*candidates, error=None):
    detector = BoundaryDetector(ScriptedQuadDetector(list(candidates), error=error), DetectionConfiguration())
    return DocumentProcessor(detector)


@pytest.fixture
def receipt_image():
    """Dark 1280x960 image with a white receipt covering the middle quarter."""
    image = np.zeros((960, 1280, 3), dtype=np.uint8)
    cv2.rectangle(image, (320, 240), (960, 720), (255, 255, 255), thickness=-1)
    return image


class TestDocumentProcessor:
    """Test decode, detection fallback and warping."""

    def test_empty_bytes_rejected(self):
        with pytest.raises(InvalidImageError):
            processor_for().prepare(b'')

    def test_undecodable_bytes_rejected(self):
        with pytest.raises(InvalidImageError) as exc_info:
            processor_for().prepare(b'definitely not a jpeg')
        assert exc_info.value.error_code == "INVALID_IMAGE"

    def test_no_boundary_passes_raw_image(self, receipt_image):
        """Without a boundary the original bytes go downstream untouched."""
        data = encode(receipt_image)

        prepared = processor_for().prepare(data)

        assert prepared.rectangle_detected is False
        assert prepared.image_bytes == data
        assert prepared.quad is None
        assert prepared.to_dict()['width'] == 1280

    def test_detection_failure_passes_raw_image(self, receipt_image):
        data = encode(receipt_image)

        prepared = processor_for(error=RuntimeError("model crashed")).prepare(data)

        assert prepared.rectangle_detected is False
        assert prepared.image_bytes == data

    def test_rejected_candidate_passes_raw_image(self, receipt_image):
        """Still detection applies the same validation rules as the preview."""
        data = encode(receipt_image)
        prepared = processor_for(make_candidate(confidence=0.1)).prepare(data)
        assert prepared.rectangle_detected is False

    def test_warps_detected_receipt(self, receipt_image):
        candidate = make_candidate(left=0.25, top=0.25, right=0.75, bottom=0.75)

        prepared = processor_for(candidate).prepare(encode(receipt_image))

        assert prepared.rectangle_detected is True
        assert prepared.quad == candidate.quad
        assert prepared.image.shape == (480, 640, 3)
        # Receipt fills the corrected image
        assert prepared.image[100:380, 100:540].mean() > 240

        decoded = cv2.imdecode(np.frombuffer(prepared.image_bytes, np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == prepared.image.shape

    def test_minimum_output_size(self):
        """Small receipts are upscaled to the minimum output size."""
        image = np.full((480, 640, 3), 90, dtype=np.uint8)
        candidate = make_candidate(left=0.25, top=0.25, right=0.75, bottom=0.75)

        prepared = processor_for(candidate).prepare(encode(image))

        assert prepared.image.shape[:2] == (300, 400)
        assert prepared.to_dict() == {
            'rectangle_detected': True,
            'corners': candidate.quad.to_dict(),
            'width': 400,
            'height': 300,
        }
