"""
Pytest configuration and fixtures for receipt scanner tests.
"""
import asyncio
import threading
from typing import List, Optional

import numpy as np
import pytest

from receipt_scanner.layer1_auto_capture.geometry import (
    DetectionCandidate,
    DetectionConfiguration,
    FrameDetectionResult,
    Quadrilateral,
)
from receipt_scanner.layer1_auto_capture.streamer import DetectionStreamer


def make_quad(left=0.2, top=0.2, right=0.8, bottom=0.8, dx=0.0, dy=0.0):
    """Axis-aligned quad, optionally shifted by (dx, dy)."""
    return Quadrilateral(
        top_left=(left + dx, top + dy),
        top_right=(right + dx, top + dy),
        bottom_left=(left + dx, bottom + dy),
        bottom_right=(right + dx, bottom + dy),
    )


def make_candidate(confidence=0.9, **kwargs):
    return DetectionCandidate(quad=make_quad(**kwargs), confidence=confidence)


class ScriptedQuadDetector:
    """Detection capability returning a fixed candidate list (or raising)."""

    def __init__(self, candidates: Optional[List[DetectionCandidate]] = None, error=None):
        self.candidates = list(candidates or [])
        self.error = error
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.candidates)


class FakeFrameSource:
    """In-memory camera producing solid gray frames."""

    def __init__(self,
                 accepted_resolutions=None,
                 has_torch=False,
                 torch_error=None,
                 open_error=None,
                 field_of_view_degrees=90.0,
                 minimum_focus_distance_mm=0.0,
                 max_zoom_factor=1.0,
                 frame_shape=(240, 320, 3)):
        self.accepted_resolutions = accepted_resolutions
        self.has_torch = has_torch
        self.torch_error = torch_error
        self.open_error = open_error
        self.field_of_view_degrees = field_of_view_degrees
        self.minimum_focus_distance_mm = minimum_focus_distance_mm
        self.max_zoom_factor = max_zoom_factor
        self.frame_shape = frame_shape

        self.is_open = False
        self.resolution_requests = []
        self.zoom = None
        self.torch = False
        self.open_count = 0
        self.read_count = 0
        self._lock = threading.Lock()

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.is_open = True
        self.open_count += 1

    def set_resolution(self, width, height):
        self.resolution_requests.append((width, height))
        if self.accepted_resolutions is None:
            return True
        return (width, height) in self.accepted_resolutions

    def read(self):
        with self._lock:
            self.read_count += 1
        threading.Event().wait(0.005)
        return np.full(self.frame_shape, 128, dtype=np.uint8)

    def set_zoom(self, factor):
        self.zoom = factor

    def set_torch(self, on):
        if self.torch_error is not None:
            raise self.torch_error
        self.torch = on

    def release(self):
        self.is_open = False


class StubCamera:
    """Stands in for CameraSessionManager in coordinator tests."""

    def __init__(self, capture_data=b'\xff\xd8jpeg', capture_error=None):
        self.streamer = DetectionStreamer(buffer_size=30)
        self.capture_data = capture_data
        self.capture_error = capture_error
        self.capture_gate: Optional[asyncio.Event] = None
        self.is_flash_on = False
        self.resolution = (1920, 1080)

        self.start_calls = 0
        self.stop_calls = 0
        self.reset_calls = 0
        self.capture_calls = 0

    def start_running(self):
        self.start_calls += 1

    def stop_running(self):
        self.stop_calls += 1

    def reset_detection_state(self):
        self.reset_calls += 1

    def toggle_flash(self):
        self.is_flash_on = not self.is_flash_on
        return self.is_flash_on

    async def capture_frame(self):
        self.capture_calls += 1
        if self.capture_gate is not None:
            await self.capture_gate.wait()
        if self.capture_error is not None:
            raise self.capture_error
        return self.capture_data


def detected(stability=0.0, auto=False, **kwargs):
    """FrameDetectionResult with a quad."""
    return FrameDetectionResult(smoothed_quad=make_quad(**kwargs), stability=stability, should_auto_capture=auto)


NOTHING = FrameDetectionResult(smoothed_quad=None, stability=0.0, should_auto_capture=False)


@pytest.fixture
def scenario_config():
    """Configuration used by the stability timeline scenarios."""
    return DetectionConfiguration(
        stability_threshold_seconds=1.0,
        position_tolerance=0.05,
        min_consecutive_stable_frames=3,
        max_area_ratio=0.85,
        min_edge_margin=0.02,
        min_confidence=0.5,
        smoothing_factor=0.5,
    )


@pytest.fixture
def fake_source():
    return FakeFrameSource()


@pytest.fixture
def stub_camera():
    return StubCamera()


@pytest.fixture
def make_runtime():
    """Factory for ScannerRuntime instances on fake hardware. Shut down after the test."""
    from receipt_scanner.app import ScannerRuntime
    from receipt_scanner.config import ScannerSettings

    runtimes = []

    def factory(candidates=None, source=None, **overrides):
        settings = ScannerSettings(
            detection=DetectionConfiguration(
                stability_threshold_seconds=0.1,
                min_consecutive_stable_frames=1,
            ),
            error_display_seconds=0.1,
            **overrides
        )
        runtime = ScannerRuntime(
            settings,
            source=source or FakeFrameSource(),
            quad_detector=ScriptedQuadDetector(candidates),
        )
        runtimes.append(runtime)
        return runtime

    yield factory

    for runtime in runtimes:
        runtime.shutdown()


@pytest.fixture
def app(make_runtime):
    """Create Flask test application with no document in view."""
    from receipt_scanner.app import create_app
    flask_app = create_app(make_runtime(candidates=[]))
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
