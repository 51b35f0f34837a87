"""
Service settings
Read once at startup from environment variables, with kiosk defaults.
"""
import os
from dataclasses import dataclass, field

from .error_handlers import ConfigurationError
from .layer1_auto_capture.geometry import DetectionConfiguration, RECEIPT_DETECTION_CONFIGURATION


def _env(environ, name, default, cast):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(name, raw, f"expected {cast.__name__}")


@dataclass
class ScannerSettings:
    """Configuration for the scanner service."""
    # Camera settings
    camera_index: int = 0
    field_of_view_degrees: float = 70.0
    minimum_focus_distance_mm: float = 0.0
    max_zoom_factor: float = 1.0

    # Framing: narrowest receipt (mm) and the share of the frame it should fill
    minimum_document_width_mm: float = 100.0
    preview_fill_fraction: float = 0.8

    # Capture
    jpeg_quality: int = 90
    stream_buffer_size: int = 30
    error_display_seconds: float = 2.0

    # Server
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    detection: DetectionConfiguration = field(default_factory=lambda: RECEIPT_DETECTION_CONFIGURATION)

    @classmethod
    def from_env(cls, environ=None) -> "ScannerSettings":
        """Build settings from environment variables (DETECTION_* for the tracker)."""
        env = os.environ if environ is None else environ
        base = RECEIPT_DETECTION_CONFIGURATION

        detection = DetectionConfiguration(
            stability_threshold_seconds=_env(
                env, 'DETECTION_STABILITY_THRESHOLD_SECONDS', base.stability_threshold_seconds, float),
            position_tolerance=_env(env, 'DETECTION_POSITION_TOLERANCE', base.position_tolerance, float),
            min_consecutive_stable_frames=_env(
                env, 'DETECTION_MIN_CONSECUTIVE_STABLE_FRAMES', base.min_consecutive_stable_frames, int),
            max_area_ratio=_env(env, 'DETECTION_MAX_AREA_RATIO', base.max_area_ratio, float),
            min_edge_margin=_env(env, 'DETECTION_MIN_EDGE_MARGIN', base.min_edge_margin, float),
            min_confidence=_env(env, 'DETECTION_MIN_CONFIDENCE', base.min_confidence, float),
            smoothing_factor=_env(env, 'DETECTION_SMOOTHING_FACTOR', base.smoothing_factor, float),
        )

        return cls(
            camera_index=_env(env, 'CAMERA_INDEX', cls.camera_index, int),
            field_of_view_degrees=_env(env, 'CAMERA_FIELD_OF_VIEW', cls.field_of_view_degrees, float),
            minimum_focus_distance_mm=_env(
                env, 'CAMERA_MIN_FOCUS_DISTANCE_MM', cls.minimum_focus_distance_mm, float),
            max_zoom_factor=_env(env, 'CAMERA_MAX_ZOOM', cls.max_zoom_factor, float),
            minimum_document_width_mm=_env(
                env, 'MIN_DOCUMENT_WIDTH_MM', cls.minimum_document_width_mm, float),
            preview_fill_fraction=_env(env, 'PREVIEW_FILL_FRACTION', cls.preview_fill_fraction, float),
            jpeg_quality=_env(env, 'JPEG_QUALITY', cls.jpeg_quality, int),
            stream_buffer_size=_env(env, 'STREAM_BUFFER_SIZE', cls.stream_buffer_size, int),
            error_display_seconds=_env(env, 'ERROR_DISPLAY_SECONDS', cls.error_display_seconds, float),
            host=env.get('HOST', cls.host),
            port=_env(env, 'PORT', cls.port, int),
            log_level=env.get('LOG_LEVEL', cls.log_level).upper(),
            detection=detection,
        )
