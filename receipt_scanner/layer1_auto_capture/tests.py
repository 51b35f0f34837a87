"""
Tests for the auto-capture layer: geometry, boundary validation, stability
tracking, result streaming, the camera session and the capture coordinator.
"""
import asyncio
import dataclasses
import math
import threading
import time
from contextlib import aclosing

import cv2
import numpy as np
import pytest

from receipt_scanner.conftest import (
    NOTHING,
    FakeFrameSource,
    ScriptedQuadDetector,
    StubCamera,
    detected,
    make_candidate,
    make_quad,
)
from receipt_scanner.error_handlers import (
    CaptureInProgressError,
    ConfigurationError,
    DetectionFailureError,
    InvalidFrameError,
    NoFrameAvailableError,
)
from receipt_scanner.layer1_auto_capture import (
    BoundaryDetector,
    CameraSessionManager,
    CaptureCoordinator,
    CapturePhase,
    ContourQuadrilateralDetector,
    DetectionCandidate,
    DetectionConfiguration,
    DetectionStreamer,
    Quadrilateral,
    RECEIPT_DETECTION_CONFIGURATION,
    OpenCVFrameSource,
    StabilityTracker,
    compute_zoom_factor,
)
from receipt_scanner.layer1_auto_capture.auto_capture import (
    MSG_CAPTURE_FAILED,
    MSG_CAPTURING,
    MSG_DOCUMENT_DETECTED,
    MSG_HOLD_STILL,
    MSG_NO_RECTANGLE,
    MSG_PRESENT_DOCUMENT,
)
from receipt_scanner.layer1_auto_capture.geometry import NO_DETECTION


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


async def wait_for(predicate, timeout=2.0):
    """Poll `predicate` on the running loop until it is truthy."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(0.01)


# ============================================================================
# Geometry
# ============================================================================

class TestQuadrilateral:
    """Test normalized quadrilateral helpers."""

    def test_area_of_axis_aligned_square(self):
        """Shoelace area of a 0.6 x 0.6 square."""
        assert make_quad().area() == pytest.approx(0.36)

    def test_area_ignores_corner_listing_order(self):
        """Area is positive regardless of how the quad is oriented."""
        flipped = Quadrilateral(
            top_left=(0.8, 0.8), top_right=(0.2, 0.8),
            bottom_left=(0.8, 0.2), bottom_right=(0.2, 0.2),
        )
        assert flipped.area() == pytest.approx(make_quad().area())

    def test_within_tolerance_is_inclusive(self):
        """A delta exactly equal to the tolerance counts as stable."""
        reference = make_quad(left=0.25, top=0.25, right=0.5, bottom=0.5)
        moved = make_quad(left=0.5, top=0.25, right=0.75, bottom=0.5)
        assert moved.within_tolerance(reference, 0.25)
        assert not moved.within_tolerance(reference, 0.2499)

    def test_single_corner_out_of_tolerance_fails(self):
        """One bad corner disqualifies the whole quad."""
        reference = make_quad()
        moved = dataclasses.replace(reference, bottom_right=(0.8, 0.9))
        assert not moved.within_tolerance(reference, 0.05)

    def test_smoothing_constant_input_is_exact(self):
        """Smoothing a quad towards itself returns it unchanged."""
        quad = make_quad(left=0.13, top=0.27, right=0.71, bottom=0.93)
        assert quad.smoothed_towards(quad, 0.3) == quad

    def test_from_pixels_orders_corners(self):
        """Unordered pixel points are assigned to the right corners."""
        points = np.array([[480, 120], [160, 360], [160, 120], [480, 360]])
        quad = Quadrilateral.from_pixels(points, 640, 480)

        assert quad.top_left == (0.25, 0.25)
        assert quad.top_right == (0.75, 0.25)
        assert quad.bottom_left == (0.25, 0.75)
        assert quad.bottom_right == (0.75, 0.75)

    def test_to_pixels_uses_warp_order(self):
        """Pixel corners come out as TL, TR, BR, BL."""
        pixels = make_quad(left=0.25, top=0.25, right=0.75, bottom=0.75).to_pixels(640, 480)
        assert pixels.dtype == np.float32
        assert pixels.tolist() == [[160, 120], [480, 120], [480, 360], [160, 360]]

    def test_to_dict(self):
        data = make_quad().to_dict()
        assert set(data) == {'top_left', 'top_right', 'bottom_left', 'bottom_right'}
        assert data['top_left'] == [0.2, 0.2]


class TestDetectionConfiguration:
    """Test configuration validation."""

    def test_receipt_preset(self):
        """Receipt preset carries the documented defaults."""
        cfg = RECEIPT_DETECTION_CONFIGURATION
        assert cfg.stability_threshold_seconds == 2.0
        assert cfg.position_tolerance == 0.03
        assert cfg.min_consecutive_stable_frames == 8
        assert cfg.max_area_ratio == 0.85
        assert cfg.min_edge_margin == 0.02
        assert cfg.min_confidence == 0.5
        assert cfg.smoothing_factor == 0.3

    @pytest.mark.parametrize("field,value", [
        ('stability_threshold_seconds', 0),
        ('stability_threshold_seconds', -1.0),
        ('stability_threshold_seconds', float('nan')),
        ('position_tolerance', -0.01),
        ('min_consecutive_stable_frames', 0),
        ('min_consecutive_stable_frames', 2.5),
        ('max_area_ratio', 0.0),
        ('max_area_ratio', 1.5),
        ('min_edge_margin', 0.5),
        ('min_confidence', 1.1),
        ('smoothing_factor', 0.0),
        ('smoothing_factor', 1.5),
    ])
    def test_invalid_values_rejected(self, field, value):
        """Invalid values fail at construction."""
        with pytest.raises(ConfigurationError) as exc_info:
            DetectionConfiguration(**{field: value})

        assert exc_info.value.error_code == "INVALID_CONFIGURATION"
        assert exc_info.value.details['field'] == field

    def test_configuration_is_immutable(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            RECEIPT_DETECTION_CONFIGURATION.position_tolerance = 0.5


# ============================================================================
# Boundary detection
# ============================================================================

class TestBoundaryDetector:
    """Test per-frame candidate validation."""

    FRAME = np.zeros((120, 160, 3), dtype=np.uint8)

    def detector_for(self, *candidates, error=None, config=None):
        return BoundaryDetector(
            ScriptedQuadDetector(list(candidates), error=error),
            config or DetectionConfiguration()
        )

    def test_accepts_valid_candidate(self):
        candidate = make_candidate()
        assert self.detector_for(candidate).detect(self.FRAME) == candidate

    def test_no_candidates(self):
        assert self.detector_for().detect(self.FRAME) is None

    def test_uses_first_candidate_only(self):
        """A rejected first candidate is not replaced by a later one."""
        weak = make_candidate(confidence=0.1)
        strong = make_candidate(confidence=0.9)
        assert self.detector_for(weak, strong).detect(self.FRAME) is None

    def test_low_confidence_rejected(self):
        assert self.detector_for(make_candidate(confidence=0.49)).detect(self.FRAME) is None

    def test_near_full_frame_rejected_at_full_confidence(self):
        """Area above max_area_ratio is treated as background."""
        candidate = make_candidate(confidence=1.0, left=0.03, top=0.03, right=0.97, bottom=0.97)
        assert candidate.quad.area() > 0.85
        assert self.detector_for(candidate).detect(self.FRAME) is None

    def test_corner_inside_edge_margin_rejected(self):
        """x=0.01 with margin 0.02 is too close to the frame edge."""
        candidate = make_candidate(left=0.01)
        assert self.detector_for(candidate).detect(self.FRAME) is None

    def test_corner_near_far_edge_rejected(self):
        candidate = make_candidate(bottom=0.99)
        assert self.detector_for(candidate).detect(self.FRAME) is None

    def test_capability_failure_wrapped(self):
        """Errors from the detection capability become DetectionFailureError."""
        detector = self.detector_for(error=RuntimeError("model crashed"))
        with pytest.raises(DetectionFailureError) as exc_info:
            detector.detect(self.FRAME)
        assert "model crashed" in exc_info.value.details['reason']

    def test_malformed_candidate_wrapped(self):
        """A candidate that cannot be validated fails like the capability itself."""
        detector = self.detector_for(DetectionCandidate(quad=None, confidence=0.9))
        with pytest.raises(DetectionFailureError):
            detector.detect(self.FRAME)

    @pytest.mark.parametrize("candidate", [
        make_candidate(confidence=float('nan')),
        make_candidate(left=float('nan')),
        make_candidate(bottom=float('inf')),
    ])
    def test_non_finite_candidate_rejected(self, candidate):
        """NaN/inf slip through comparisons, so they are rejected explicitly."""
        assert self.detector_for(candidate).detect(self.FRAME) is None

    @pytest.mark.parametrize("frame", [
        None,
        "not a frame",
        np.zeros((0, 0, 3), dtype=np.uint8),
        np.zeros((2, 2, 2, 2), dtype=np.uint8),
    ])
    def test_invalid_frames(self, frame):
        with pytest.raises(InvalidFrameError):
            self.detector_for(make_candidate()).detect(frame)


class TestContourQuadrilateralDetector:
    """Test the OpenCV contour detection capability."""

    @staticmethod
    def receipt_frame():
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        cv2.rectangle(frame, (160, 120), (480, 360), (255, 255, 255), thickness=-1)
        return frame

    def test_finds_rectangle(self):
        """A bright rectangle on a dark background is found with high confidence."""
        candidates = ContourQuadrilateralDetector().detect(self.receipt_frame())

        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.confidence > 0.9
        assert candidate.quad.top_left == pytest.approx((0.25, 0.25), abs=0.02)
        assert candidate.quad.top_right == pytest.approx((0.75, 0.25), abs=0.02)
        assert candidate.quad.bottom_left == pytest.approx((0.25, 0.75), abs=0.02)
        assert candidate.quad.bottom_right == pytest.approx((0.75, 0.75), abs=0.02)

    def test_downscaled_frames_stay_normalized(self):
        """Large frames are processed downscaled but corners stay normalized."""
        frame = cv2.resize(self.receipt_frame(), (1280, 960), interpolation=cv2.INTER_NEAREST)
        candidates = ContourQuadrilateralDetector().detect(frame)

        assert len(candidates) == 1
        assert candidates[0].quad.bottom_right == pytest.approx((0.75, 0.75), abs=0.02)

    def test_blank_frame(self):
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        assert ContourQuadrilateralDetector().detect(frame) == []

    def test_validated_by_boundary_detector(self):
        detector = BoundaryDetector(ContourQuadrilateralDetector(), RECEIPT_DETECTION_CONFIGURATION)
        assert detector.detect(self.receipt_frame()) is not None


# ============================================================================
# Stability tracking
# ============================================================================

class TestStabilityTracker:
    """Test stability classification and smoothing."""

    def test_first_sighting(self, scenario_config):
        """First candidate initializes smoothing and reference without counting."""
        tracker = StabilityTracker(scenario_config)
        quad = make_quad()

        result = tracker.update(DetectionCandidate(quad, 0.9), 0.0)

        assert result.smoothed_quad == quad
        assert result.stability == 0.0
        assert result.should_auto_capture is False
        assert tracker.state.reference_quad == quad
        assert tracker.state.consecutive_stable_frames == 0
        assert tracker.state.stable_since is None

    def test_identical_candidates_auto_capture_after_threshold(self, scenario_config):
        """Candidate A every 0.3 s: timer starts once 3 stable frames follow the first sighting."""
        tracker = StabilityTracker(scenario_config)
        candidate = make_candidate()
        times = [i * 0.3 for i in range(8)]
        results = [tracker.update(candidate, t) for t in times]

        # Timer not yet started
        assert [r.stability for r in results[:4]] == [0.0, 0.0, 0.0, 0.0]
        assert tracker.state.stable_since == times[3]

        assert results[4].stability == pytest.approx(0.3)
        assert results[6].stability == pytest.approx(0.9)
        assert results[6].should_auto_capture is False

        # ~1.2 s after the timer started
        assert results[7].stability == 1.0
        assert results[7].should_auto_capture is True

    def test_stability_monotonic_and_clamped(self, scenario_config):
        tracker = StabilityTracker(dataclasses.replace(scenario_config, min_consecutive_stable_frames=1))
        candidate = make_candidate()
        stabilities = [tracker.update(candidate, i * 0.25).stability for i in range(12)]

        assert stabilities == sorted(stabilities)
        assert max(stabilities) == 1.0
        assert all(0.0 <= s <= 1.0 for s in stabilities)

    def test_auto_capture_exactly_at_threshold(self, scenario_config):
        """should_auto_capture flips when elapsed time first reaches the threshold."""
        tracker = StabilityTracker(dataclasses.replace(scenario_config, min_consecutive_stable_frames=1))
        candidate = make_candidate()

        tracker.update(candidate, 0.0)
        assert tracker.update(candidate, 1.0).stability == 0.0  # timer starts
        assert tracker.update(candidate, 1.75).should_auto_capture is False

        result = tracker.update(candidate, 2.0)
        assert result.stability == 1.0
        assert result.should_auto_capture is True

    def test_shift_beyond_tolerance_resets(self, scenario_config):
        """A, A, then B shifted by 0.2 resets counters and timer."""
        tracker = StabilityTracker(dataclasses.replace(scenario_config, min_consecutive_stable_frames=1))
        a = make_candidate()
        b = make_candidate(dx=0.2)

        tracker.update(a, 0.0)
        tracker.update(a, 0.3)
        assert tracker.state.stable_since is not None

        result = tracker.update(b, 0.6)

        assert result.stability == 0.0
        assert result.should_auto_capture is False
        assert tracker.state.consecutive_stable_frames == 0
        assert tracker.state.stable_since is None
        assert tracker.state.reference_quad == b.quad

    def test_missing_detection_resets_everything(self, scenario_config):
        """One frame without a candidate drops all accumulated stability."""
        tracker = StabilityTracker(dataclasses.replace(scenario_config, min_consecutive_stable_frames=1))
        candidate = make_candidate()
        for i in range(4):
            tracker.update(candidate, i * 0.3)
        assert tracker.state.stable_since is not None

        result = tracker.update(None, 1.2)

        assert result == NO_DETECTION
        assert tracker.state.reference_quad is None
        assert tracker.state.smoothed_quad is None
        assert tracker.state.stable_since is None
        assert tracker.state.consecutive_stable_frames == 0

        # Next candidate is a first sighting again
        assert tracker.update(candidate, 1.5).stability == 0.0
        assert tracker.state.consecutive_stable_frames == 0

    def test_slow_drift_counts_as_stable(self, scenario_config):
        """Per-frame steps within tolerance pass even when total drift does not."""
        tracker = StabilityTracker(scenario_config)
        results = []
        for i in range(16):
            candidate = make_candidate(left=0.1, top=0.1, right=0.4, bottom=0.5, dx=0.02 * i)
            results.append(tracker.update(candidate, i * 0.1))

        total_drift = 0.02 * 15
        assert total_drift > scenario_config.position_tolerance
        assert tracker.state.consecutive_stable_frames == 15
        assert results[-1].should_auto_capture is True

    def test_smoothing_converges_monotonically(self, scenario_config):
        """The smoothed corner approaches a held quad without overshooting."""
        tracker = StabilityTracker(scenario_config)
        start = make_candidate()
        target = make_candidate(dx=0.04)
        target_x = target.quad.top_left[0]

        tracker.update(start, 0.0)
        distances = []
        for i in range(1, 8):
            result = tracker.update(target, i * 0.1)
            x = result.smoothed_quad.top_left[0]
            assert x <= target_x
            distances.append(target_x - x)

        assert all(later < earlier for earlier, later in zip(distances, distances[1:]))
        assert distances[0] == pytest.approx(0.02)

    def test_constant_quad_smoothed_exactly(self, scenario_config):
        tracker = StabilityTracker(scenario_config)
        candidate = make_candidate(left=0.17, top=0.23, right=0.61, bottom=0.89)
        for i in range(5):
            assert tracker.update(candidate, i * 0.1).smoothed_quad == candidate.quad

    def test_smoothing_disabled(self, scenario_config):
        """Smoothing factor 1.0 follows the latest candidate."""
        tracker = StabilityTracker(dataclasses.replace(scenario_config, smoothing_factor=1.0))
        tracker.update(make_candidate(), 0.0)
        target = make_candidate(dx=0.03)

        smoothed = tracker.update(target, 0.1).smoothed_quad

        for got, want in zip(smoothed.corners(), target.quad.corners()):
            assert got == pytest.approx(want)

    def test_reset_mid_stability(self, scenario_config):
        """After reset the next candidate behaves as a first-ever sighting."""
        tracker = StabilityTracker(dataclasses.replace(scenario_config, min_consecutive_stable_frames=1))
        for i in range(5):
            tracker.update(make_candidate(), i * 0.3)
        assert tracker.state.stable_since is not None

        tracker.reset()
        fresh = make_candidate(dx=0.01)
        result = tracker.update(fresh, 2.0)

        assert result.smoothed_quad == fresh.quad
        assert result.stability == 0.0
        assert tracker.state.consecutive_stable_frames == 0
        assert tracker.state.stable_since is None


# ============================================================================
# Streaming
# ============================================================================

class TestDetectionStreamer:
    """Test the producer/consumer result channel."""

    @staticmethod
    def result(i):
        return detected(stability=i / 1000.0)

    def test_rejects_empty_buffer(self):
        with pytest.raises(ValueError):
            DetectionStreamer(buffer_size=0)

    def test_delivers_in_production_order(self):
        streamer = DetectionStreamer()
        for i in range(5):
            streamer.push(self.result(i))

        async def consume():
            received = []
            async with aclosing(streamer.results()) as results:
                async for r in results:
                    received.append(r.stability)
                    if len(received) == 5:
                        break
            return received

        assert asyncio.run(consume()) == [i / 1000.0 for i in range(5)]

    def test_drops_oldest_when_full(self):
        streamer = DetectionStreamer(buffer_size=3)
        for i in range(5):
            streamer.push(self.result(i))

        assert streamer.pending() == 3
        assert streamer.dropped_count == 2
        assert streamer.pushed_count == 5

        streamer.close()

        async def consume():
            return [r.stability async for r in streamer.results()]

        assert asyncio.run(consume()) == [0.002, 0.003, 0.004]

    def test_push_from_producer_thread(self):
        """Results pushed from another thread arrive in order."""
        streamer = DetectionStreamer(buffer_size=100)

        def produce():
            for i in range(50):
                streamer.push(self.result(i))
                time.sleep(0.001)

        async def consume():
            received = []
            producer = threading.Thread(target=produce)
            async with aclosing(streamer.results()) as results:
                producer.start()
                async for r in results:
                    received.append(r.stability)
                    if len(received) == 50:
                        break
            producer.join()
            return received

        assert asyncio.run(consume()) == [i / 1000.0 for i in range(50)]

    def test_cancelled_consumer_detaches(self):
        """Cancelling the consumer leaves the producer and channel usable."""
        streamer = DetectionStreamer()

        async def scenario():
            async def consumer():
                async for _ in streamer.results():
                    pass

            task = asyncio.get_running_loop().create_task(consumer())
            await wait_for(lambda: streamer.has_consumer)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            assert not streamer.has_consumer

            # Producer keeps pushing with no consumer attached
            streamer.push(self.result(7))

            async with aclosing(streamer.results()) as results:
                async for r in results:
                    return r.stability

        assert asyncio.run(scenario()) == 0.007

    def test_second_concurrent_consumer_rejected(self):
        streamer = DetectionStreamer()

        async def scenario():
            async def consumer():
                async for _ in streamer.results():
                    pass

            task = asyncio.get_running_loop().create_task(consumer())
            await wait_for(lambda: streamer.has_consumer)
            try:
                with pytest.raises(RuntimeError):
                    async for _ in streamer.results():
                        pass
            finally:
                task.cancel()

        asyncio.run(scenario())

    def test_close_ends_iteration(self):
        streamer = DetectionStreamer()

        async def scenario():
            async def consumer():
                return [r async for r in streamer.results()]

            task = asyncio.get_running_loop().create_task(consumer())
            await wait_for(lambda: streamer.has_consumer)
            streamer.push(self.result(1))
            streamer.close()
            return await asyncio.wait_for(task, timeout=2.0)

        assert len(asyncio.run(scenario())) == 1
        assert streamer.closed

    def test_clear_discards_pending(self):
        streamer = DetectionStreamer()
        streamer.push(self.result(1))
        streamer.clear()
        assert streamer.pending() == 0


# ============================================================================
# Camera session
# ============================================================================

class TestComputeZoomFactor:
    """Test minimum zoom for close-focus limits."""

    def test_zooms_when_subject_closer_than_focus(self):
        """90 degree FOV: a 100 mm receipt filling 80% sits 125 mm away."""
        zoom = compute_zoom_factor(90.0, 200.0, 10.0)
        assert zoom == pytest.approx(1.6)

    def test_no_zoom_when_focus_is_close_enough(self):
        assert compute_zoom_factor(90.0, 100.0, 10.0) == 1.0

    def test_no_zoom_without_focus_information(self):
        assert compute_zoom_factor(90.0, 0.0, 10.0) == 1.0

    def test_clamped_to_max_zoom(self):
        assert compute_zoom_factor(90.0, 1000.0, 4.0) == 4.0

    def test_never_below_one(self):
        assert compute_zoom_factor(90.0, 200.0, 0.5) == 1.0

    def test_uses_document_width_and_fill(self):
        """60 degree FOV, 150 mm document filling half the frame sits ~520 mm away."""
        expected = 1000.0 / ((150.0 / 0.5) / math.tan(math.radians(30.0)))
        zoom = compute_zoom_factor(60.0, 1000.0, 10.0, minimum_document_width_mm=150.0, fill_fraction=0.5)
        assert expected > 1.0
        assert zoom == pytest.approx(expected)


def make_session(source=None, candidates=None, error=None, min_frames=1, clock=None):
    config = DetectionConfiguration(
        stability_threshold_seconds=1.0,
        position_tolerance=0.05,
        min_consecutive_stable_frames=min_frames,
    )
    candidates = [make_candidate()] if candidates is None else candidates
    return CameraSessionManager(
        source=source or FakeFrameSource(),
        boundary_detector=BoundaryDetector(ScriptedQuadDetector(candidates, error=error), config),
        tracker=StabilityTracker(config),
        streamer=DetectionStreamer(),
        clock=clock or FakeClock(),
    )


class TestCameraSessionManager:
    """Test frame processing, still capture and session control."""

    FRAME = np.full((240, 320, 3), 200, dtype=np.uint8)

    def test_process_frame_pushes_result(self):
        session = make_session()

        result = session.process_frame(self.FRAME)

        assert result.smoothed_quad == make_quad()
        assert session.streamer.pending() == 1
        assert session.latest_frame() is self.FRAME
        assert session.frame_count == 1

    def test_invalid_frame_dropped(self):
        """Unreadable frames produce no result and leave the latest frame alone."""
        session = make_session()

        assert session.process_frame(np.zeros((0, 0, 3), dtype=np.uint8)) is None
        assert session.streamer.pending() == 0
        assert session.latest_frame() is None
        assert session.frame_count == 0

    def test_detection_failure_is_no_candidate(self):
        """A failing detector yields an empty result and the stream continues."""
        session = make_session(error=RuntimeError("model crashed"))

        result = session.process_frame(self.FRAME)

        assert result == NO_DETECTION
        assert session.streamer.pending() == 1

    def test_reset_applied_before_next_frame(self):
        clock = FakeClock()
        session = make_session(clock=clock)
        for now in (0.0, 1.0, 1.5):
            clock.now = now
            result = session.process_frame(self.FRAME)
        assert result.stability == 0.5

        session.reset_detection_state()
        clock.now = 2.0
        result = session.process_frame(self.FRAME)

        assert result.stability == 0.0
        assert session.tracker.state.consecutive_stable_frames == 0

    def test_encode_latest_frame(self):
        session = make_session()
        session.process_frame(self.FRAME)

        data = session.encode_latest_frame()

        assert data[:2] == b'\xff\xd8'
        decoded = cv2.imdecode(np.frombuffer(data, np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == self.FRAME.shape

    def test_capture_frame_async(self):
        session = make_session()
        session.process_frame(self.FRAME)
        assert asyncio.run(session.capture_frame())[:2] == b'\xff\xd8'

    def test_capture_without_frame(self):
        session = make_session()
        with pytest.raises(NoFrameAvailableError):
            session.encode_latest_frame()
        with pytest.raises(NoFrameAvailableError):
            asyncio.run(session.capture_frame())

    def test_capture_is_single_flight(self):
        session = make_session()
        session.process_frame(self.FRAME)

        session._capture_lock.acquire()
        try:
            with pytest.raises(CaptureInProgressError):
                session.encode_latest_frame()
        finally:
            session._capture_lock.release()

    def test_resolution_fallback(self):
        """The first accepted tier wins."""
        source = FakeFrameSource(accepted_resolutions=[(1280, 720)])
        session = make_session(source=source)

        session.start_running()
        try:
            assert session.resolution == (1280, 720)
            assert source.resolution_requests == [(3840, 2160), (1920, 1080), (1280, 720)]
        finally:
            session.stop_running()

    def test_no_resolution_accepted(self):
        source = FakeFrameSource(accepted_resolutions=[])
        session = make_session(source=source)

        session.start_running()
        session.stop_running()

        assert session.resolution is None

    def test_zoom_applied_on_start(self):
        source = FakeFrameSource(minimum_focus_distance_mm=200.0, max_zoom_factor=4.0)
        session = make_session(source=source)

        session.start_running()
        session.stop_running()

        assert session.zoom_factor == pytest.approx(1.6)
        assert source.zoom == session.zoom_factor

    def test_frame_thread_start_stop_restart(self):
        """Frames flow while running; a restart reuses the same streamer."""
        source = FakeFrameSource(accepted_resolutions=[(1920, 1080)])
        session = make_session(source=source, clock=time.monotonic)
        streamer = session.streamer

        session.start_running()
        assert session.is_running
        wait_until(lambda: session.frame_count >= 3)
        session.stop_running()

        assert not session.is_running
        assert not source.is_open
        pushed = streamer.pushed_count

        session.start_running()
        try:
            wait_until(lambda: streamer.pushed_count > pushed)
            assert source.open_count == 2
            assert source.resolution_requests[-1] == (1920, 1080)
            assert session.streamer is streamer
        finally:
            session.stop_running()

    def test_start_twice_keeps_one_thread(self):
        session = make_session()
        session.start_running()
        try:
            thread = session._thread
            session.start_running()
            assert session._thread is thread
        finally:
            session.stop_running()

    def test_context_manager(self):
        session = make_session()
        with session:
            assert session.is_running
        assert not session.is_running

    def test_flash_without_torch(self):
        """Flash state is logical when the camera has no torch."""
        source = FakeFrameSource(has_torch=False)
        session = make_session(source=source)

        assert session.toggle_flash() is True
        assert session.toggle_flash() is False
        assert source.torch is False

    def test_flash_with_torch(self):
        source = FakeFrameSource(has_torch=True)
        session = make_session(source=source)

        assert session.toggle_flash() is True
        assert source.torch is True

    def test_flash_hardware_failure_ignored(self):
        source = FakeFrameSource(has_torch=True, torch_error=OSError("busy"))
        session = make_session(source=source)

        assert session.toggle_flash() is True
        assert session.is_flash_on is True

    def test_opencv_torch_request_is_ignored(self):
        """OpenCV capture has no torch; a request is a no-op."""
        source = OpenCVFrameSource(camera_index=99)
        assert source.has_torch is False
        source.set_torch(True)

    def test_malformed_candidate_keeps_frame_thread_alive(self):
        """A bad candidate degrades to no detection and frames keep flowing."""
        session = make_session(candidates=[DetectionCandidate(quad=None, confidence=0.9)])
        detector = session.boundary_detector.detector

        with session:
            wait_until(lambda: detector.calls >= 3)
            assert session.is_running
            wait_until(lambda: session.streamer.pushed_count >= 3)

        assert session.frame_count >= 3

    def test_unexpected_processing_error_keeps_frame_thread_alive(self):
        """Errors past detection are logged and the tracker is reset."""
        class BrokenTracker(StabilityTracker):
            failures = 0
            resets = 0

            def update(self, candidate, now):
                BrokenTracker.failures += 1
                raise ValueError("tracker bug")

            def reset(self):
                BrokenTracker.resets += 1
                super().reset()

        session = make_session()
        session.tracker = BrokenTracker(session.tracker.config)

        with session:
            wait_until(lambda: BrokenTracker.failures >= 3)
            assert session.is_running

        assert BrokenTracker.resets >= 1
        assert session.streamer.pushed_count == 0


# ============================================================================
# Capture coordinator
# ============================================================================

class TestCaptureCoordinatorStates:
    """Test state transitions driven by detection results."""

    def test_initial_state(self, stub_camera):
        coordinator = CaptureCoordinator(stub_camera)
        assert coordinator.state.phase is CapturePhase.IDLE
        assert coordinator.status_message == MSG_PRESENT_DOCUMENT
        assert not coordinator.is_capturing

    def test_detected_then_hold_still_then_lost(self, stub_camera):
        coordinator = CaptureCoordinator(stub_camera)

        coordinator.handle_detection_result(detected(stability=0.0))
        assert coordinator.state.phase is CapturePhase.DETECTING
        assert coordinator.status_message == MSG_DOCUMENT_DETECTED

        coordinator.handle_detection_result(detected(stability=0.5))
        assert coordinator.state.stability == 0.5
        assert coordinator.status_message == MSG_HOLD_STILL

        coordinator.handle_detection_result(NOTHING)
        assert coordinator.state.phase is CapturePhase.IDLE
        assert coordinator.smoothed_quad is None
        assert coordinator.status_message == MSG_PRESENT_DOCUMENT

    def test_snapshot(self, stub_camera):
        coordinator = CaptureCoordinator(stub_camera)
        coordinator.handle_detection_result(detected(stability=0.25))

        snapshot = coordinator.snapshot()

        assert snapshot['state'] == {'phase': 'detecting', 'stability': 0.25, 'message': None}
        assert snapshot['detected'] is True
        assert snapshot['corners']['top_left'] == [0.2, 0.2]
        assert snapshot['is_capturing'] is False


class TestCaptureCoordinatorCapture:
    """Test auto/manual capture, errors and reset on a running loop."""

    def test_auto_capture(self, stub_camera):
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera, error_display_seconds=0.05)
            captured = []
            coordinator.add_capture_listener(captured.append)

            await coordinator.start_scanning()
            stub_camera.streamer.push(detected(stability=1.0, auto=True))
            await wait_for(lambda: captured)
            await coordinator.stop_scanning()
            return coordinator, captured

        coordinator, captured = asyncio.run(scenario())

        result = captured[0]
        assert result.success
        assert result.image_bytes == stub_camera.capture_data
        assert result.rectangle_detected is True
        assert result.corners == make_quad()
        assert result.metadata['trigger'] == 'auto'
        assert coordinator.last_capture is result
        # Camera stopped after capture, then again by stop_scanning
        assert stub_camera.stop_calls == 2
        # Stays in CAPTURING until reset
        assert coordinator.state.phase is CapturePhase.CAPTURING
        assert coordinator.status_message == MSG_CAPTURING
        assert coordinator.is_capturing

    def test_single_flight(self, stub_camera):
        """Triggers during an in-flight capture are ignored, frames are skipped."""
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera)
            captured = []
            coordinator.add_capture_listener(captured.append)
            stub_camera.capture_gate = asyncio.Event()

            await coordinator.start_scanning()
            stub_camera.streamer.push(detected(stability=1.0, auto=True))
            stub_camera.streamer.push(detected(stability=1.0, auto=True))
            await wait_for(lambda: stub_camera.capture_calls == 1)

            stub_camera.streamer.push(detected(stability=0.3))
            await asyncio.sleep(0.05)

            assert coordinator.manual_capture() is False
            assert coordinator.stability == 1.0
            assert coordinator.state.phase is CapturePhase.CAPTURING

            stub_camera.capture_gate.set()
            await wait_for(lambda: captured)
            await coordinator.stop_scanning()
            return captured

        captured = asyncio.run(scenario())

        assert len(captured) == 1
        assert stub_camera.capture_calls == 1

    def test_manual_capture_with_document(self, stub_camera):
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera)
            captured = []
            coordinator.add_capture_listener(captured.append)

            coordinator.handle_detection_result(detected(stability=0.2))
            assert coordinator.manual_capture() is True
            await wait_for(lambda: captured)
            return captured

        captured = asyncio.run(scenario())
        assert captured[0].metadata['trigger'] == 'manual'

    def test_manual_capture_without_document(self, stub_camera):
        """No rectangle: error shown, then reverts to IDLE."""
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera, error_display_seconds=0.05)

            assert coordinator.manual_capture() is False
            assert coordinator.state.phase is CapturePhase.ERROR
            assert coordinator.state.message == MSG_NO_RECTANGLE
            assert coordinator.status_message == MSG_NO_RECTANGLE

            await wait_for(lambda: coordinator.state.phase is CapturePhase.IDLE)
            return coordinator

        coordinator = asyncio.run(scenario())
        assert coordinator.status_message == MSG_PRESENT_DOCUMENT
        assert stub_camera.capture_calls == 0

    def test_newer_error_supersedes_revert(self, stub_camera):
        """Only the latest error's timer reverts the state."""
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera, error_display_seconds=0.2)

            coordinator.manual_capture()
            await asyncio.sleep(0.1)
            coordinator.manual_capture()

            # First timer has fired but was superseded
            await asyncio.sleep(0.15)
            assert coordinator.state.phase is CapturePhase.ERROR

            await asyncio.sleep(0.2)
            assert coordinator.state.phase is CapturePhase.IDLE

        asyncio.run(scenario())

    def test_capture_failure_recovers(self):
        """A failed capture shows an error, releases the guard and reverts to DETECTING."""
        camera = StubCamera(capture_error=NoFrameAvailableError())

        async def scenario():
            coordinator = CaptureCoordinator(camera, error_display_seconds=0.2)
            captured = []
            coordinator.add_capture_listener(captured.append)

            await coordinator.start_scanning()
            camera.streamer.push(detected(stability=1.0, auto=True))
            await wait_for(lambda: coordinator.state.phase is CapturePhase.ERROR)

            assert coordinator.state.message == MSG_CAPTURE_FAILED
            assert not coordinator.is_capturing

            # Skipped while the error is displayed
            camera.streamer.push(detected(stability=0.4))
            await asyncio.sleep(0.02)
            assert coordinator.stability == 1.0

            await wait_for(lambda: coordinator.state.phase is CapturePhase.DETECTING)
            assert coordinator.status_message == MSG_DOCUMENT_DETECTED

            await coordinator.stop_scanning()
            return coordinator, captured

        coordinator, captured = asyncio.run(scenario())

        assert captured == []
        assert coordinator.last_capture is None
        # The camera keeps running after a failure
        assert camera.stop_calls == 1

    def test_reset_for_next_scan(self, stub_camera):
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera)
            captured = []
            coordinator.add_capture_listener(captured.append)

            await coordinator.start_scanning()
            stub_camera.streamer.push(detected(stability=1.0, auto=True))
            await wait_for(lambda: captured)

            await coordinator.reset_for_next_scan()
            assert coordinator.state.phase is CapturePhase.IDLE
            assert not coordinator.is_capturing
            assert coordinator.smoothed_quad is None
            assert coordinator.last_capture is None
            assert stub_camera.streamer.pending() == 0

            stub_camera.streamer.push(detected(stability=1.0, auto=True))
            await wait_for(lambda: len(captured) == 2)
            await coordinator.stop_scanning()

        asyncio.run(scenario())

        assert stub_camera.start_calls == 2
        assert stub_camera.reset_calls == 2
        assert stub_camera.capture_calls == 2

    def test_reset_after_stop_restarts_detection(self, stub_camera):
        """Stop, then reset: the detection loop is running again and results flow."""
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera)
            await coordinator.start_scanning()
            await coordinator.stop_scanning()

            await coordinator.reset_for_next_scan()
            assert coordinator.is_scanning

            stub_camera.streamer.push(detected(stability=0.5))
            await wait_for(lambda: coordinator.state.phase is CapturePhase.DETECTING)
            assert coordinator.status_message == MSG_HOLD_STILL

            await coordinator.stop_scanning()

        asyncio.run(scenario())
        assert stub_camera.start_calls == 2

    def test_start_scanning_cancels_inflight_capture(self, stub_camera):
        """Restarting while a capture is in flight cancels it before clearing the guard."""
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera)
            captured = []
            coordinator.add_capture_listener(captured.append)
            stub_camera.capture_gate = asyncio.Event()

            await coordinator.start_scanning()
            stub_camera.streamer.push(detected(stability=1.0, auto=True))
            await wait_for(lambda: stub_camera.capture_calls == 1)

            await coordinator.start_scanning()
            assert not coordinator.is_capturing
            assert coordinator.state.phase is CapturePhase.IDLE
            assert coordinator._capture_task is None

            # The cancelled capture never delivers a result
            stub_camera.capture_gate.set()
            await asyncio.sleep(0.05)
            assert captured == []

            stub_camera.streamer.push(detected(stability=1.0, auto=True))
            await wait_for(lambda: captured)
            await coordinator.stop_scanning()
            return captured

        captured = asyncio.run(scenario())
        assert len(captured) == 1
        assert stub_camera.capture_calls == 2

    def test_stop_scanning_detaches_consumer(self, stub_camera):
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera)
            await coordinator.start_scanning()
            await wait_for(lambda: stub_camera.streamer.has_consumer)

            await coordinator.stop_scanning()
            assert not coordinator.is_scanning
            assert not stub_camera.streamer.has_consumer

            # Same streamer instance serves the next session
            await coordinator.start_scanning()
            await wait_for(lambda: stub_camera.streamer.has_consumer)
            await coordinator.stop_scanning()

        asyncio.run(scenario())
        assert stub_camera.stop_calls == 2

    def test_listener_errors_do_not_block_others(self, stub_camera):
        async def scenario():
            coordinator = CaptureCoordinator(stub_camera)
            received = []

            def broken(result):
                raise ValueError("listener bug")

            async def async_listener(result):
                received.append(result)

            coordinator.add_capture_listener(broken)
            coordinator.add_capture_listener(async_listener)

            coordinator.handle_detection_result(detected(stability=1.0, auto=True))
            await wait_for(lambda: received)
            return received

        assert asyncio.run(scenario())[0].success

    def test_toggle_flash(self, stub_camera):
        coordinator = CaptureCoordinator(stub_camera)
        assert asyncio.run(coordinator.toggle_flash()) is True
        assert asyncio.run(coordinator.toggle_flash()) is False
