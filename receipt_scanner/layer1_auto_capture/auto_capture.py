"""
Layer 1 — Auto-Capture Coordinator
State machine that consumes per-frame detection results and manual triggers
and captures a single still per scan.

Features:
- Auto-capture once the tracker reports a stable document
- Manual capture, refused while no document is detected
- Single-flight capture guard (concurrent triggers are ignored)
- Timed error messages that revert to the current detection state
- Frames arriving while capturing or showing an error are skipped
"""
import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..error_handlers import CaptureFailureError, handle_error
from .camera import CameraSessionManager
from .geometry import FrameDetectionResult, Quadrilateral

logger = logging.getLogger(__name__)

ERROR_DISPLAY_SECONDS = 2.0

# Status messages shown by the kiosk
MSG_PRESENT_DOCUMENT = "Hold a receipt up to the camera"
MSG_DOCUMENT_DETECTED = "Receipt detected"
MSG_HOLD_STILL = "Hold still..."
MSG_CAPTURING = "Capturing..."
MSG_NO_RECTANGLE = "no rectangle detected"
MSG_CAPTURE_FAILED = "capture failed"


class CapturePhase(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    CAPTURING = "capturing"
    ERROR = "error"


@dataclass(frozen=True)
class CoordinatorState:
    """Current phase plus the data carried by DETECTING and ERROR."""
    phase: CapturePhase
    stability: float = 0.0
    message: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'phase': self.phase.value,
            'stability': round(self.stability, 4),
            'message': self.message,
        }


IDLE_STATE = CoordinatorState(CapturePhase.IDLE)
CAPTURING_STATE = CoordinatorState(CapturePhase.CAPTURING)


@dataclass
class CaptureResult:
    """Result of a capture attempt."""
    success: bool
    image_bytes: Optional[bytes] = None
    rectangle_detected: bool = False
    corners: Optional[Quadrilateral] = None
    timestamp: str = ""
    error: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        """Convert to dictionary for API response."""
        result = {
            'success': self.success,
            'timestamp': self.timestamp,
            'rectangle_detected': self.rectangle_detected,
            'error': self.error,
            'metadata': self.metadata
        }
        if self.image_bytes is not None:
            result['size_bytes'] = len(self.image_bytes)
        if self.corners:
            result['corners'] = self.corners.to_dict()
        return result


CaptureListener = Callable[[CaptureResult], Any]


class CaptureCoordinator:
    """
    Auto-capture state machine: IDLE, DETECTING(stability), CAPTURING, ERROR(message).

    Runs on the consumer's asyncio event loop. All methods must be called from
    that loop; the camera's frame thread only talks to the coordinator through
    the DetectionStreamer.
    """

    def __init__(self,
                 camera: CameraSessionManager,
                 error_display_seconds: float = ERROR_DISPLAY_SECONDS):
        """
        Args:
            camera: Session manager whose streamer feeds this coordinator
            error_display_seconds: How long an error stays before reverting
        """
        self.camera = camera
        self.streamer = camera.streamer
        self.error_display_seconds = error_display_seconds

        self.state = IDLE_STATE
        self.smoothed_quad: Optional[Quadrilateral] = None
        self.stability = 0.0
        self.status_message = MSG_PRESENT_DOCUMENT
        self.last_capture: Optional[CaptureResult] = None

        self._is_capturing = False
        self._error_token = 0
        self._scanning_task: Optional[asyncio.Task] = None
        self._capture_task: Optional[asyncio.Task] = None
        self._revert_task: Optional[asyncio.Task] = None
        self._listeners: List[CaptureListener] = []

        logger.info("CaptureCoordinator initialized")

    @property
    def is_capturing(self) -> bool:
        return self._is_capturing

    @property
    def is_scanning(self) -> bool:
        return self._scanning_task is not None and not self._scanning_task.done()

    def add_capture_listener(self, listener: CaptureListener):
        """Register a callback (plain or async) receiving each successful CaptureResult."""
        self._listeners.append(listener)

    def snapshot(self) -> Dict:
        """Current state for API responses."""
        return {
            'state': self.state.to_dict(),
            'status_message': self.status_message,
            'detected': self.smoothed_quad is not None,
            'corners': self.smoothed_quad.to_dict() if self.smoothed_quad else None,
            'stability': round(self.stability, 4),
            'is_capturing': self._is_capturing,
            'is_scanning': self.is_scanning,
            'is_flash_on': self.camera.is_flash_on,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _clear_detection(self):
        self._error_token += 1
        self._is_capturing = False
        self.smoothed_quad = None
        self.stability = 0.0
        self.state = IDLE_STATE
        self.status_message = MSG_PRESENT_DOCUMENT

    async def _cancel_capture(self):
        """Cancel an in-flight capture and wait for it to finish unwinding."""
        task = self._capture_task
        self._capture_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("In-flight capture cancelled")

    def _ensure_detection_loop(self):
        # One loop for the whole scanning lifetime
        if not self.is_scanning:
            self._scanning_task = asyncio.get_running_loop().create_task(self._detection_loop())

    async def start_scanning(self):
        """Start the camera and, if not already running, the detection loop."""
        await self._cancel_capture()
        self._clear_detection()
        self.camera.reset_detection_state()
        self.streamer.clear()

        self._ensure_detection_loop()

        await asyncio.to_thread(self.camera.start_running)
        logger.info("Scanning started")

    async def stop_scanning(self):
        """Cancel the detection loop and stop the camera."""
        task = self._scanning_task
        self._scanning_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await asyncio.to_thread(self.camera.stop_running)
        logger.info("Scanning stopped")

    async def reset_for_next_scan(self):
        """Return to IDLE, clear tracking and restart the camera and detection for a retake."""
        await self._cancel_capture()
        self._clear_detection()
        self.camera.reset_detection_state()
        self.streamer.clear()
        self.last_capture = None

        self._ensure_detection_loop()

        await asyncio.to_thread(self.camera.start_running)
        logger.info("Reset for next scan")

    reset = reset_for_next_scan

    async def toggle_flash(self) -> bool:
        return await asyncio.to_thread(self.camera.toggle_flash)

    # ------------------------------------------------------------------
    # Detection loop
    # ------------------------------------------------------------------

    async def _detection_loop(self):
        logger.debug("Detection loop started")
        try:
            async with aclosing(self.streamer.results()) as results:
                async for result in results:
                    # Skipped, not buffered: capturing or showing an error
                    if self._is_capturing or self.state.phase is CapturePhase.ERROR:
                        continue
                    try:
                        self.handle_detection_result(result)
                    except Exception as e:
                        logger.error(f"Failed to handle detection result: {e}")
        finally:
            logger.debug("Detection loop finished")

    def handle_detection_result(self, result: FrameDetectionResult):
        """Apply one stream result: update state/status and auto-capture when stable."""
        self.smoothed_quad = result.smoothed_quad
        self.stability = result.stability

        if result.smoothed_quad is None:
            self.state = IDLE_STATE
            self.status_message = MSG_PRESENT_DOCUMENT
        else:
            self.state = CoordinatorState(CapturePhase.DETECTING, stability=result.stability)
            if result.should_auto_capture:
                self.status_message = MSG_CAPTURING
            elif result.stability > 0:
                self.status_message = MSG_HOLD_STILL
            else:
                self.status_message = MSG_DOCUMENT_DETECTED

        if result.should_auto_capture:
            self._perform_capture(trigger="auto")

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def manual_capture(self) -> bool:
        """
        Shutter button.

        Returns:
            bool: True if a capture was started
        """
        if self._is_capturing:
            return False

        if self.smoothed_quad is None:
            self._show_temporary_error(MSG_NO_RECTANGLE)
            return False

        return self._perform_capture(trigger="manual")

    def _perform_capture(self, trigger: str) -> bool:
        if self._is_capturing:
            return False

        self._is_capturing = True
        self._error_token += 1
        self.state = CAPTURING_STATE
        self.status_message = MSG_CAPTURING
        logger.info(f"Capture triggered ({trigger})")

        self._capture_task = asyncio.get_running_loop().create_task(self._capture(trigger))
        return True

    async def _capture(self, trigger: str) -> CaptureResult:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        corners = self.smoothed_quad
        stability = self.stability

        error = None
        try:
            data = await self.camera.capture_frame()
        except CaptureFailureError as e:
            error = handle_error(e)
        except Exception as e:
            error = handle_error(e, log_message="Unexpected error during still capture")

        if error is not None:
            self._is_capturing = False
            self._show_temporary_error(MSG_CAPTURE_FAILED)
            return CaptureResult(
                success=False,
                timestamp=timestamp,
                error=error['error'],
                metadata={'trigger': trigger, 'error_code': error['error_code']}
            )

        try:
            await asyncio.to_thread(self.camera.stop_running)
        except Exception as e:
            logger.warning(f"Failed to stop camera after capture: {e}")

        result = CaptureResult(
            success=True,
            image_bytes=data,
            rectangle_detected=corners is not None,
            corners=corners,
            timestamp=timestamp,
            metadata={
                'trigger': trigger,
                'stability': round(stability, 4),
                'resolution': self.camera.resolution,
            }
        )
        self.last_capture = result
        await self._notify(result)
        return result

    async def _notify(self, result: CaptureResult):
        for listener in list(self._listeners):
            try:
                outcome = listener(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Capture listener failed: {e}")

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def _show_temporary_error(self, message: str):
        """Show `message` and revert to the detection state after the display delay."""
        self._error_token += 1
        token = self._error_token
        self.state = CoordinatorState(CapturePhase.ERROR, message=message)
        self.status_message = message
        logger.info(f"Showing error: {message}")

        self._revert_task = asyncio.get_running_loop().create_task(self._revert_error(token))

    async def _revert_error(self, token: int):
        await asyncio.sleep(self.error_display_seconds)

        # A newer message, capture or reset took over
        if token != self._error_token or self.state.phase is not CapturePhase.ERROR:
            return

        if self.smoothed_quad is not None:
            self.state = CoordinatorState(CapturePhase.DETECTING, stability=self.stability)
            self.status_message = MSG_DOCUMENT_DETECTED
        else:
            self.state = IDLE_STATE
            self.status_message = MSG_PRESENT_DOCUMENT
