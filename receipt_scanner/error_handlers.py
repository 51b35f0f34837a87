"""
Error Handling System
Provides consistent error responses across the capture pipeline
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base exception for scanner errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ConfigurationError(ScannerError):
    """Invalid detection or camera configuration (raised at construction)"""
    def __init__(self, field, value, reason):
        super().__init__(
            message=f"Invalid configuration for {field}: {reason}",
            error_code="INVALID_CONFIGURATION",
            details={
                "field": field,
                "value": value,
                "reason": reason
            }
        )


# Layer 1 Errors - Camera
class CameraError(ScannerError):
    """Camera-related errors"""
    pass


class CameraNotFoundError(CameraError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(CameraError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at /dev/video{camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotInitializedError(CameraError):
    """Attempting to use camera before initialization"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start the camera first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Call /start_camera endpoint first"
            }
        )


# Layer 1 Errors - Per-frame detection (never surfaced to the user)
class FrameError(ScannerError):
    """Per-frame processing errors"""
    pass


class InvalidFrameError(FrameError):
    """Frame buffer is empty or unreadable"""
    def __init__(self, reason="empty frame"):
        super().__init__(
            message=f"Unreadable frame: {reason}",
            error_code="INVALID_FRAME",
            details={"reason": reason}
        )


class DetectionFailureError(FrameError):
    """External quadrilateral detector failed on a frame"""
    def __init__(self, reason):
        super().__init__(
            message=f"Boundary detection failed: {reason}",
            error_code="DETECTION_FAILED",
            details={"reason": str(reason)}
        )


# Layer 1 Errors - Still capture (user-visible)
class CaptureFailureError(ScannerError):
    """Still capture failed"""
    pass


class NoFrameAvailableError(CaptureFailureError):
    """No frame has been observed yet"""
    def __init__(self):
        super().__init__(
            message="No camera frame available for capture",
            error_code="NO_FRAME_AVAILABLE",
            details={
                "suggestion": "Start the camera and wait for the preview before capturing"
            }
        )


class ImageEncodingError(CaptureFailureError):
    """Encoding the captured frame failed"""
    def __init__(self, reason):
        super().__init__(
            message="Failed to encode captured frame",
            error_code="IMAGE_ENCODING_FAILED",
            details={
                "reason": str(reason),
                "suggestion": "Retry the capture"
            }
        )


class CaptureInProgressError(CaptureFailureError):
    """A still capture is already running"""
    def __init__(self):
        super().__init__(
            message="A capture is already in progress",
            error_code="CAPTURE_IN_PROGRESS"
        )


# Layer 2 Errors - Image Processing
class ProcessingError(ScannerError):
    """Image processing errors"""
    pass


class InvalidImageError(ProcessingError):
    """Captured image bytes could not be decoded"""
    def __init__(self):
        super().__init__(
            message="Could not decode image data",
            error_code="INVALID_IMAGE",
            details={
                "suggestion": "Provide a JPEG or PNG encoded image"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
