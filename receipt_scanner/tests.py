"""
Tests for the receipt scanner Flask application, settings and error handling.
"""
import json
import time

import pytest

from receipt_scanner.app import create_app
from receipt_scanner.conftest import FakeFrameSource, make_candidate
from receipt_scanner.config import ScannerSettings
from receipt_scanner.error_handlers import (
    CameraNotFoundError,
    ConfigurationError,
    NoFrameAvailableError,
    handle_error,
)
from receipt_scanner.layer1_auto_capture import RECEIPT_DETECTION_CONFIGURATION


def poll(fetch, predicate, timeout=5.0):
    """Call `fetch` until `predicate(response)` holds."""
    deadline = time.monotonic() + timeout
    while True:
        response = fetch()
        if predicate(response):
            return response
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(0.02)


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['service'] == 'receipt-scanner'

    def test_cors_headers(self, client):
        """Test API returns CORS headers for the kiosk front-end."""
        response = client.get('/health', headers={'Origin': 'http://kiosk.local'})
        assert response.headers.get('Access-Control-Allow-Origin') in ['*', 'http://kiosk.local']


class TestStatusEndpoints:
    """Test status reporting."""

    def test_api_status(self, client):
        response = client.get('/api/status')
        data = json.loads(response.data)

        assert data['success'] is True
        assert data['camera_running'] is False
        assert data['detection']['min_consecutive_stable_frames'] == 1
        assert data['endpoints']['capture'] == '/capture'

    def test_detection_status_idle(self, client):
        response = client.get('/detection_status')
        data = json.loads(response.data)

        assert data['success'] is True
        assert data['detection']['state']['phase'] == 'idle'
        assert data['detection']['detected'] is False

    def test_unknown_route(self, client):
        assert client.get('/api/nothing-here').status_code == 404


class TestCaptureEndpoints:
    """Test manual capture and capture retrieval."""

    def test_capture_without_document(self, client):
        """Manual capture with nothing detected shows the error state."""
        response = client.post('/capture')
        data = json.loads(response.data)

        assert data['success'] is False
        assert data['state']['state']['phase'] == 'error'
        assert data['state']['status_message'] == 'no rectangle detected'

    def test_no_capture_available(self, client):
        response = client.get('/api/capture')
        assert response.status_code == 404
        assert json.loads(response.data)['error_code'] == 'NO_CAPTURE'

        assert client.get('/api/capture/image').status_code == 404

    def test_flash_toggle(self, client):
        first = json.loads(client.post('/flash').data)
        second = json.loads(client.post('/flash').data)
        assert first['flash'] is True
        assert second['flash'] is False


class TestScanFlow:
    """End-to-end scan on fake camera hardware."""

    def test_auto_capture_and_reset(self, make_runtime):
        runtime = make_runtime(candidates=[make_candidate()])
        client = create_app(runtime).test_client()

        response = client.post('/start_camera')
        assert response.status_code == 200
        assert json.loads(response.data)['success'] is True

        # Held steady: the scanner captures on its own
        response = poll(
            lambda: client.get('/api/capture'),
            lambda r: r.status_code == 200 and 'prepared' in json.loads(r.data)
        )
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['rectangle_detected'] is True
        assert data['metadata']['trigger'] == 'auto'
        assert data['prepared']['rectangle_detected'] is True
        assert (data['prepared']['width'], data['prepared']['height']) == (400, 300)

        image = client.get('/api/capture/image')
        assert image.mimetype == 'image/jpeg'
        assert image.data[:2] == b'\xff\xd8'

        status = json.loads(client.get('/detection_status').data)
        assert status['detection']['state']['phase'] == 'capturing'
        assert runtime.camera.is_running is False

        # Receipt taken away, then retake
        runtime.camera.boundary_detector.detector.candidates = []
        response = client.post('/reset')
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['state']['state']['phase'] == 'idle'
        assert client.get('/api/capture').status_code == 404
        assert runtime.camera.is_running is True

        assert json.loads(client.post('/stop_camera').data)['success'] is True
        assert runtime.camera.is_running is False

    def test_start_camera_missing_device(self, make_runtime):
        runtime = make_runtime(source=FakeFrameSource(open_error=CameraNotFoundError(3)))
        client = create_app(runtime).test_client()

        response = client.post('/start_camera')

        assert response.status_code == 503
        data = json.loads(response.data)
        assert data['success'] is False
        assert data['error_code'] == 'CAMERA_NOT_FOUND'
        assert data['details']['camera_index'] == 3


class TestScannerSettings:
    """Test settings loaded from the environment."""

    def test_defaults(self):
        settings = ScannerSettings.from_env({})
        assert settings == ScannerSettings()
        assert settings.detection == RECEIPT_DETECTION_CONFIGURATION

    def test_overrides(self):
        settings = ScannerSettings.from_env({
            'CAMERA_INDEX': '2',
            'PORT': '8080',
            'LOG_LEVEL': 'debug',
            'JPEG_QUALITY': '80',
            'DETECTION_STABILITY_THRESHOLD_SECONDS': '1.5',
            'DETECTION_MIN_CONSECUTIVE_STABLE_FRAMES': '3',
        })

        assert settings.camera_index == 2
        assert settings.port == 8080
        assert settings.log_level == 'DEBUG'
        assert settings.jpeg_quality == 80
        assert settings.detection.stability_threshold_seconds == 1.5
        assert settings.detection.min_consecutive_stable_frames == 3
        assert settings.detection.position_tolerance == RECEIPT_DETECTION_CONFIGURATION.position_tolerance

    def test_bad_number(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ScannerSettings.from_env({'PORT': 'eighty'})
        assert exc_info.value.details['field'] == 'PORT'

    def test_invalid_detection_value(self):
        """Non-positive stability threshold is fatal at startup."""
        with pytest.raises(ConfigurationError):
            ScannerSettings.from_env({'DETECTION_STABILITY_THRESHOLD_SECONDS': '0'})


class TestErrorHandling:
    """Test consistent error responses."""

    def test_scanner_error(self):
        response = handle_error(NoFrameAvailableError())
        assert response['success'] is False
        assert response['error_code'] == 'NO_FRAME_AVAILABLE'
        assert 'suggestion' in response['details']

    def test_unexpected_error(self):
        response = handle_error(ValueError("boom"), log_message="Something failed")
        assert response['error_code'] == 'UNEXPECTED_ERROR'
        assert response['details'] == {'error_type': 'ValueError', 'error_message': 'boom'}
