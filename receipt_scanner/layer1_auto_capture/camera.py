"""
Layer 1 — Camera Session
Owns the live camera session: resolution fallback, the frame-processing
thread that feeds detection, on-demand still capture of the latest frame,
zoom/focus setup and the torch.
"""
import asyncio
import logging
import math
import os
import threading
import time
from typing import Callable, List, Optional, Protocol, Tuple

import cv2
import numpy as np

from ..error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    CaptureInProgressError,
    DetectionFailureError,
    ImageEncodingError,
    InvalidFrameError,
    NoFrameAvailableError,
)
from .detector import BoundaryDetector
from .stability import StabilityTracker
from .streamer import DetectionStreamer

logger = logging.getLogger(__name__)

# Highest first; the first tier the device accepts wins
RESOLUTION_TIERS: List[Tuple[int, int]] = [
    (3840, 2160),
    (1920, 1080),
    (1280, 720),
]

# Narrowest receipt we expect (mm) and the share of the frame it should fill
MINIMUM_DOCUMENT_WIDTH_MM = 100.0
PREVIEW_FILL_FRACTION = 0.8
JPEG_QUALITY = 90


def compute_zoom_factor(field_of_view_degrees: float,
                        minimum_focus_distance_mm: float,
                        max_zoom_factor: float,
                        minimum_document_width_mm: float = MINIMUM_DOCUMENT_WIDTH_MM,
                        fill_fraction: float = PREVIEW_FILL_FRACTION) -> float:
    """
    Minimum zoom so the narrowest document fills the frame while still in focus.

    The camera must be at least `minimum_subject_distance` away for a document of
    `minimum_document_width_mm` to fill `fill_fraction` of the horizontal field of
    view. When the lens cannot focus that close, zooming in by
    min_focus / subject_distance lets the user hold the document further away.

    Returns:
        float: Zoom factor >= 1.0, clamped to `max_zoom_factor`
    """
    half_fov = math.radians(field_of_view_degrees) / 2.0
    if half_fov <= 0 or fill_fraction <= 0:
        return 1.0

    filled_width = minimum_document_width_mm / fill_fraction
    minimum_subject_distance = filled_width / math.tan(half_fov)

    if minimum_focus_distance_mm > 0 and minimum_subject_distance < minimum_focus_distance_mm:
        zoom = minimum_focus_distance_mm / minimum_subject_distance
        return max(1.0, min(zoom, max_zoom_factor))
    return 1.0


class FrameSource(Protocol):
    """Camera hardware as seen by the session manager."""

    field_of_view_degrees: float
    minimum_focus_distance_mm: float
    max_zoom_factor: float
    has_torch: bool

    def open(self) -> None: ...

    def set_resolution(self, width: int, height: int) -> bool: ...

    def read(self) -> Optional[np.ndarray]: ...

    def set_zoom(self, factor: float) -> None: ...

    def set_torch(self, on: bool) -> None: ...

    def release(self) -> None: ...


class OpenCVFrameSource:
    """
    USB camera via OpenCV's V4L2 backend.

    OpenCV does not report optics, so field of view, minimum focus distance and
    max zoom come from the constructor.
    """

    DEFAULT_CONFIG = {
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,  # Minimal buffer for low latency
    }

    def __init__(self,
                 camera_index: int = 0,
                 field_of_view_degrees: float = 70.0,
                 minimum_focus_distance_mm: float = 0.0,
                 max_zoom_factor: float = 1.0,
                 config: Optional[dict] = None):
        self.camera_index = camera_index
        self.field_of_view_degrees = field_of_view_degrees
        self.minimum_focus_distance_mm = minimum_focus_distance_mm
        self.max_zoom_factor = max_zoom_factor
        self.has_torch = False
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None

    def open(self):
        if self.camera is not None and self.camera.isOpened():
            return

        device_path = f"/dev/video{self.camera_index}"
        if not os.path.exists(device_path):
            logger.error(f"Camera device not found: {device_path}")
            raise CameraNotFoundError(self.camera_index)

        self.camera = cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2)
        if not self.camera.isOpened():
            self.camera = None
            raise CameraInitError(self.camera_index, reason="Failed to open camera device")

        cfg = self.config
        self.camera.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*cfg['codec']))
        self.camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])
        logger.info(f"Camera opened at {device_path}")

    def set_resolution(self, width: int, height: int) -> bool:
        if self.camera is None:
            raise CameraNotInitializedError()
        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        actual = (int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH)),
                  int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT)))
        return actual == (width, height)

    def read(self) -> Optional[np.ndarray]:
        if self.camera is None:
            raise CameraNotInitializedError()
        ret, frame = self.camera.read()
        return frame if ret else None

    def set_zoom(self, factor: float):
        if self.camera is not None:
            self.camera.set(cv2.CAP_PROP_ZOOM, factor)

    def set_torch(self, on: bool):
        # V4L2 through OpenCV exposes no torch control
        logger.debug(f"Torch request ignored (on={on}), not supported by OpenCV capture")

    def release(self):
        if self.camera is not None:
            self.camera.release()
            self.camera = None
            logger.info("Camera released")


class CameraSessionManager:
    """
    Live camera session feeding the detection pipeline.

    A dedicated thread reads frames, runs boundary detection and stability
    tracking, keeps the most recent frame for still capture and pushes each
    FrameDetectionResult into the streamer. The streamer outlives start/stop
    cycles of the session.
    """

    def __init__(self,
                 source: FrameSource,
                 boundary_detector: BoundaryDetector,
                 tracker: StabilityTracker,
                 streamer: DetectionStreamer,
                 minimum_document_width_mm: float = MINIMUM_DOCUMENT_WIDTH_MM,
                 fill_fraction: float = PREVIEW_FILL_FRACTION,
                 jpeg_quality: int = JPEG_QUALITY,
                 resolution_tiers: Optional[List[Tuple[int, int]]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.source = source
        self.boundary_detector = boundary_detector
        self.tracker = tracker
        self.streamer = streamer
        self.minimum_document_width_mm = minimum_document_width_mm
        self.fill_fraction = fill_fraction
        self.jpeg_quality = jpeg_quality
        self.resolution_tiers = resolution_tiers or list(RESOLUTION_TIERS)
        self.clock = clock

        self.resolution: Optional[Tuple[int, int]] = None
        self.zoom_factor = 1.0
        self.is_flash_on = False
        self.frame_count = 0

        self._is_configured = False
        self._latest_frame: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self._capture_lock = threading.Lock()
        self._session_lock = threading.Lock()
        self._reset_requested = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info("CameraSessionManager created")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def start_running(self):
        """Open and configure the camera (first call only) and start the frame thread."""
        with self._session_lock:
            if self.is_running:
                logger.debug("Camera session already running")
                return

            self.source.open()
            if not self._is_configured:
                self._configure_session()
            elif self.resolution is not None:
                self.source.set_resolution(*self.resolution)
            self._configure_for_scanning()

            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._capture_loop,
                name="camera-frames",
                daemon=True,
            )
            self._thread.start()
            logger.info("Camera session started")

    def stop_running(self, timeout: float = 2.0):
        """Stop the frame thread and release the device. The streamer is kept."""
        with self._session_lock:
            thread = self._thread
            self._stop_event.set()
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    logger.warning("Frame thread did not stop within timeout")
            self._thread = None
            self.source.release()
            logger.info("Camera session stopped")

    def reset_detection_state(self):
        """Ask the frame thread to reset stability tracking before its next frame."""
        self._reset_requested.set()

    def _configure_session(self):
        for width, height in self.resolution_tiers:
            try:
                accepted = self.source.set_resolution(width, height)
            except Exception as e:
                logger.warning(f"Resolution {width}x{height} failed: {e}")
                accepted = False
            if accepted:
                self.resolution = (width, height)
                logger.info(f"Capture resolution: {width}x{height}")
                break
        else:
            logger.warning("No resolution tier accepted, keeping device default")
        self._is_configured = True

    def _configure_for_scanning(self):
        self.zoom_factor = compute_zoom_factor(
            self.source.field_of_view_degrees,
            self.source.minimum_focus_distance_mm,
            self.source.max_zoom_factor,
            minimum_document_width_mm=self.minimum_document_width_mm,
            fill_fraction=self.fill_fraction,
        )
        try:
            self.source.set_zoom(self.zoom_factor)
            logger.debug(f"Zoom factor set to {self.zoom_factor:.2f}")
        except Exception as e:
            # Scanning works without zoom
            logger.warning(f"Zoom configuration failed: {e}")

    # ------------------------------------------------------------------
    # Frame thread
    # ------------------------------------------------------------------

    def _capture_loop(self):
        while not self._stop_event.is_set():
            try:
                frame = self.source.read()
            except Exception as e:
                logger.error(f"Frame read failed: {e}")
                time.sleep(0.1)
                continue

            if frame is None:
                time.sleep(0.01)
                continue

            try:
                self.process_frame(frame)
            except Exception as e:
                # Keep the stream alive; start the next frame from a clean tracker
                logger.exception(f"Frame processing failed: {e}")
                self._reset_requested.set()

    def process_frame(self, frame: np.ndarray):
        """
        Run one frame through detection and tracking. Called on the frame thread.

        Returns:
            FrameDetectionResult, or None if the frame was unreadable and dropped
        """
        if self._reset_requested.is_set():
            self._reset_requested.clear()
            self.tracker.reset()
            logger.debug("Stability tracker reset")

        try:
            candidate = self.boundary_detector.detect(frame)
        except InvalidFrameError as e:
            logger.debug(f"Dropping frame: {e.message}")
            return None
        except DetectionFailureError as e:
            logger.warning(e.message)
            candidate = None

        result = self.tracker.update(candidate, self.clock())

        with self._frame_lock:
            self._latest_frame = frame
        self.frame_count += 1

        self.streamer.push(result)
        return result

    # ------------------------------------------------------------------
    # Still capture
    # ------------------------------------------------------------------

    def latest_frame(self) -> Optional[np.ndarray]:
        with self._frame_lock:
            return self._latest_frame

    def encode_latest_frame(self) -> bytes:
        """
        JPEG-encode the frame the detection path processed last.

        Raises:
            CaptureInProgressError: If another capture is running
            NoFrameAvailableError: If no frame has been processed yet
            ImageEncodingError: If encoding fails
        """
        if not self._capture_lock.acquire(blocking=False):
            raise CaptureInProgressError()
        try:
            frame = self.latest_frame()
            if frame is None:
                raise NoFrameAvailableError()

            try:
                ok, buffer = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
            except cv2.error as e:
                raise ImageEncodingError(e) from e
            if not ok:
                raise ImageEncodingError("cv2.imencode returned False")

            data = buffer.tobytes()
            logger.info(f"Captured still {frame.shape[1]}x{frame.shape[0]} ({len(data)} bytes)")
            return data
        finally:
            self._capture_lock.release()

    async def capture_frame(self) -> bytes:
        """Capture the latest frame as JPEG bytes without blocking the event loop."""
        return await asyncio.to_thread(self.encode_latest_frame)

    # ------------------------------------------------------------------
    # Flash
    # ------------------------------------------------------------------

    def toggle_flash(self) -> bool:
        """Flip the torch. Hardware failures are ignored; the requested state is returned."""
        self.is_flash_on = not self.is_flash_on

        if not getattr(self.source, 'has_torch', False):
            return self.is_flash_on

        try:
            self.source.set_torch(self.is_flash_on)
        except Exception as e:
            logger.warning(f"Torch configuration failed: {e}")

        return self.is_flash_on

    def __enter__(self):
        """Context manager entry."""
        self.start_running()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.stop_running()
        return False
