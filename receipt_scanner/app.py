"""
Receipt Scanner Web Application
Thin HTTP control surface for the auto-capture engine.

Provides REST API for:
- Starting/stopping the camera and detection loop
- Live detection status (stability, corners, state machine phase)
- Manual capture, flash toggle and reset for the next scan
- Retrieving the last captured (perspective-corrected) receipt image
"""
import asyncio
import inspect
import logging
import threading
from typing import Optional

from flask import Flask, Response, jsonify
from flask_cors import CORS

from .config import ScannerSettings
from .error_handlers import CameraError, ScannerError, handle_error
from .layer1_auto_capture import (
    BoundaryDetector,
    CameraSessionManager,
    CaptureCoordinator,
    CaptureResult,
    ContourQuadrilateralDetector,
    DetectionStreamer,
    OpenCVFrameSource,
    StabilityTracker,
)
from .layer2_readjustment import DocumentProcessor, PreparedDocument

logger = logging.getLogger(__name__)

SERVICE_NAME = "receipt-scanner"
SERVICE_VERSION = "1.0.0"
CALL_TIMEOUT_SECONDS = 10.0


class ScannerRuntime:
    """
    Wires the capture pipeline and hosts the coordinator on its own event loop.

    Flask handlers run on worker threads; every coordinator call is funneled
    onto the runtime's loop with `call()`.
    """

    def __init__(self, settings: ScannerSettings, source=None, quad_detector=None):
        logger.info("Initializing ScannerRuntime")
        self.settings = settings

        boundary_detector = BoundaryDetector(
            quad_detector or ContourQuadrilateralDetector(),
            settings.detection
        )
        source = source or OpenCVFrameSource(
            camera_index=settings.camera_index,
            field_of_view_degrees=settings.field_of_view_degrees,
            minimum_focus_distance_mm=settings.minimum_focus_distance_mm,
            max_zoom_factor=settings.max_zoom_factor,
        )

        self.streamer = DetectionStreamer(buffer_size=settings.stream_buffer_size)
        self.camera = CameraSessionManager(
            source=source,
            boundary_detector=boundary_detector,
            tracker=StabilityTracker(settings.detection),
            streamer=self.streamer,
            minimum_document_width_mm=settings.minimum_document_width_mm,
            fill_fraction=settings.preview_fill_fraction,
            jpeg_quality=settings.jpeg_quality,
        )
        self.processor = DocumentProcessor(boundary_detector, jpeg_quality=settings.jpeg_quality)
        self.coordinator = CaptureCoordinator(
            self.camera,
            error_display_seconds=settings.error_display_seconds
        )
        self.coordinator.add_capture_listener(self._on_capture)
        self.prepared: Optional[PreparedDocument] = None

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="scanner-loop", daemon=True)
        self._thread.start()

        logger.info("ScannerRuntime initialized successfully")

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def call(self, fn, *args, timeout: float = CALL_TIMEOUT_SECONDS):
        """Run `fn(*args)` on the runtime loop and return its (awaited) result."""
        async def invoke():
            result = fn(*args)
            if inspect.isawaitable(result):
                result = await result
            return result

        return asyncio.run_coroutine_threadsafe(invoke(), self._loop).result(timeout)

    async def _on_capture(self, result: CaptureResult):
        """Prepare the captured still for downstream extraction."""
        self.prepared = None
        try:
            self.prepared = await asyncio.to_thread(self.processor.prepare, result.image_bytes)
            logger.info(f"Capture prepared (rectangle detected: {self.prepared.rectangle_detected})")
        except ScannerError as e:
            handle_error(e)

    def shutdown(self):
        """Stop scanning and the event loop."""
        if not self._loop.is_running():
            return
        try:
            self.call(self.coordinator.stop_scanning)
        except Exception as e:
            logger.warning(f"Error while stopping scanner: {e}")
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=2.0)
        self._loop.close()
        logger.info("ScannerRuntime shut down")


def create_app(runtime: ScannerRuntime) -> Flask:
    """Build the Flask app around a running ScannerRuntime."""
    app = Flask(__name__)
    app.config['SCANNER_RUNTIME'] = runtime

    # Enable CORS for cross-origin requests from the kiosk front-end
    CORS(app, origins=["*"])

    coordinator = runtime.coordinator

    # ========================================================================
    # Camera control
    # ========================================================================

    @app.route('/start_camera', methods=['POST'])
    def start_camera():
        """Start camera and detection loop"""
        logger.info("Start camera request received")
        try:
            runtime.call(coordinator.start_scanning)
            return jsonify({"success": True, "state": runtime.call(coordinator.snapshot)})
        except CameraError as e:
            return jsonify(handle_error(e)), 503
        except Exception as e:
            return jsonify(handle_error(e)), 500

    @app.route('/stop_camera', methods=['POST'])
    def stop_camera():
        """Stop camera and detection loop"""
        logger.info("Stop camera request received")
        runtime.call(coordinator.stop_scanning)
        return jsonify({"success": True})

    @app.route('/detection_status', methods=['GET'])
    def detection_status():
        """Current detection state (for UI polling)"""
        return jsonify({
            "success": True,
            "detection": runtime.call(coordinator.snapshot)
        })

    @app.route('/capture', methods=['POST'])
    def capture():
        """Manual shutter"""
        logger.info("Capture request received from client")
        started = runtime.call(coordinator.manual_capture)
        return jsonify({
            "success": started,
            "state": runtime.call(coordinator.snapshot)
        })

    @app.route('/flash', methods=['POST'])
    def flash():
        """Toggle torch"""
        is_on = runtime.call(coordinator.toggle_flash)
        return jsonify({"success": True, "flash": is_on})

    @app.route('/reset', methods=['POST'])
    def reset():
        """Re-arm for the next scan"""
        logger.info("Reset request received")
        try:
            runtime.call(coordinator.reset_for_next_scan)
            runtime.prepared = None
            return jsonify({"success": True, "state": runtime.call(coordinator.snapshot)})
        except CameraError as e:
            return jsonify(handle_error(e)), 503

    # ========================================================================
    # Captured image
    # ========================================================================

    @app.route('/api/capture', methods=['GET'])
    def last_capture():
        """Metadata of the last successful capture"""
        result = coordinator.last_capture
        if result is None:
            return jsonify({
                "success": False,
                "error": "No capture available",
                "error_code": "NO_CAPTURE"
            }), 404

        response = result.to_dict()
        if runtime.prepared is not None:
            response['prepared'] = runtime.prepared.to_dict()
        return jsonify(response)

    @app.route('/api/capture/image', methods=['GET'])
    def last_capture_image():
        """Prepared JPEG of the last capture (raw still if not prepared)"""
        if runtime.prepared is not None:
            data = runtime.prepared.image_bytes
        elif coordinator.last_capture is not None:
            data = coordinator.last_capture.image_bytes
        else:
            return jsonify({
                "success": False,
                "error": "No capture available",
                "error_code": "NO_CAPTURE"
            }), 404
        return Response(data, mimetype='image/jpeg')

    # ========================================================================
    # Service endpoints
    # ========================================================================

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint for service discovery and load balancers"""
        return jsonify({
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION
        })

    @app.route("/api/status", methods=["GET"])
    def api_status():
        """Service status and configuration"""
        return jsonify({
            "success": True,
            "camera_running": runtime.camera.is_running,
            "resolution": runtime.camera.resolution,
            "zoom_factor": runtime.camera.zoom_factor,
            "frames_processed": runtime.camera.frame_count,
            "results_dropped": runtime.streamer.dropped_count,
            "detection": runtime.settings.detection.to_dict(),
            "endpoints": {
                "health": "/health",
                "start_camera": "/start_camera",
                "stop_camera": "/stop_camera",
                "detection_status": "/detection_status",
                "capture": "/capture",
                "flash": "/flash",
                "reset": "/reset",
                "last_capture": "/api/capture",
                "last_capture_image": "/api/capture/image"
            }
        })

    return app


def main():
    """Run the scanner service."""
    settings = ScannerSettings.from_env()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    runtime = ScannerRuntime(settings)
    app = create_app(runtime)

    logger.info(f"Flask server starting on {settings.host}:{settings.port} (camera /dev/video{settings.camera_index})")
    try:
        app.run(host=settings.host, port=settings.port, threaded=True)
    finally:
        runtime.shutdown()


if __name__ == '__main__':
    main()
