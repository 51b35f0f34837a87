"""
Layer 1 — Stability Tracking
Smooths detected corners and decides when the document has been held still
long enough to auto-capture.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from .geometry import (
    NO_DETECTION,
    DetectionCandidate,
    DetectionConfiguration,
    FrameDetectionResult,
    Quadrilateral,
)

logger = logging.getLogger(__name__)


@dataclass
class StabilityState:
    """Mutable tracking state. Owned by a single StabilityTracker."""
    # Previous frame's quad; stability compares frame-to-frame
    reference_quad: Optional[Quadrilateral] = None
    stable_since: Optional[float] = None
    consecutive_stable_frames: int = 0
    smoothed_quad: Optional[Quadrilateral] = None


class StabilityTracker:
    """
    Per-frame stability classifier.

    Not thread-safe: one frame-processing context owns the tracker and is the
    only caller of `update` and `reset`.

    A frame without a candidate discards all accumulated stability. Because
    the reference follows the latest candidate, slow drift that stays within
    tolerance on every step still counts as stable.
    """

    def __init__(self, config: DetectionConfiguration):
        self.config = config
        self.state = StabilityState()

    def reset(self):
        """Forget the reference, timer, counters and smoothed corners."""
        self.state = StabilityState()

    def update(self, candidate: Optional[DetectionCandidate], now: float) -> FrameDetectionResult:
        """
        Feed one frame's validated candidate.

        Args:
            candidate: Validated detection, or None if the frame had none
            now: Monotonic timestamp of the frame in seconds

        Returns:
            FrameDetectionResult for this frame
        """
        if candidate is None:
            if self.state.reference_quad is not None:
                logger.debug("Detection lost, stability reset")
            self.reset()
            return NO_DETECTION

        cfg = self.config
        state = self.state
        quad = candidate.quad

        if state.smoothed_quad is None:
            state.smoothed_quad = quad
        else:
            state.smoothed_quad = state.smoothed_quad.smoothed_towards(quad, cfg.smoothing_factor)

        stability = 0.0
        should_auto_capture = False

        if state.reference_quad is not None:
            if quad.within_tolerance(state.reference_quad, cfg.position_tolerance):
                state.consecutive_stable_frames += 1

                if state.consecutive_stable_frames >= cfg.min_consecutive_stable_frames:
                    if state.stable_since is None:
                        state.stable_since = now
                        logger.debug(f"Stable for {state.consecutive_stable_frames} frames, timer started")

                    elapsed = now - state.stable_since
                    stability = min(elapsed / cfg.stability_threshold_seconds, 1.0)
                    should_auto_capture = elapsed >= cfg.stability_threshold_seconds
            else:
                state.stable_since = None
                state.consecutive_stable_frames = 0

        state.reference_quad = quad

        return FrameDetectionResult(
            smoothed_quad=state.smoothed_quad,
            stability=stability,
            should_auto_capture=should_auto_capture,
        )
