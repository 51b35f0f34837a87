"""
Layer 1 — Detection Streamer
Hands FrameDetectionResult values from the frame thread to an asyncio consumer.

The producer never waits on the consumer. Results are buffered in a bounded
drop-oldest queue; when the consumer stalls the oldest results are discarded
and counted.
"""
import asyncio
import logging
import threading
from collections import deque
from typing import AsyncIterator, Optional

from .geometry import FrameDetectionResult

logger = logging.getLogger(__name__)

# About one second of results at 30 fps
DEFAULT_BUFFER_SIZE = 30


class DetectionStreamer:
    """
    Single-producer/single-consumer channel, created once per scanning session.

    `push` may be called from any thread. `results()` is iterated by one asyncio
    consumer at a time; cancelling that consumer detaches it without affecting
    the producer, and a new consumer can attach to the same instance later.
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self.buffer_size = buffer_size
        self._buffer = deque(maxlen=buffer_size)
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._closed = False
        self.pushed_count = 0
        self.dropped_count = 0

    @property
    def has_consumer(self) -> bool:
        with self._lock:
            return self._wakeup is not None

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def pending(self) -> int:
        """Number of buffered, undelivered results."""
        with self._lock:
            return len(self._buffer)

    def push(self, result: FrameDetectionResult):
        """Enqueue a result without blocking. Drops the oldest result when full."""
        with self._lock:
            if self._closed:
                return
            if len(self._buffer) == self.buffer_size:
                self.dropped_count += 1
                if self.dropped_count % 100 == 1:
                    logger.warning(f"Detection consumer lagging, {self.dropped_count} results dropped so far")
            self._buffer.append(result)
            self.pushed_count += 1
            loop, wakeup = self._loop, self._wakeup

        if loop is not None and wakeup is not None:
            try:
                loop.call_soon_threadsafe(wakeup.set)
            except RuntimeError:
                # Consumer loop already closed; it will detach on its own
                logger.debug("Consumer loop closed, result left buffered")

    def clear(self):
        """Discard buffered results."""
        with self._lock:
            self._buffer.clear()

    def close(self):
        """Stop delivery. The active consumer finishes after draining the buffer."""
        with self._lock:
            self._closed = True
            loop, wakeup = self._loop, self._wakeup
        if loop is not None and wakeup is not None:
            try:
                loop.call_soon_threadsafe(wakeup.set)
            except RuntimeError:
                pass

    def _attach(self) -> asyncio.Event:
        with self._lock:
            if self._wakeup is not None:
                raise RuntimeError("DetectionStreamer already has an active consumer")
            self._loop = asyncio.get_running_loop()
            self._wakeup = asyncio.Event()
            return self._wakeup

    def _detach(self, wakeup: asyncio.Event):
        with self._lock:
            if self._wakeup is wakeup:
                self._loop = None
                self._wakeup = None

    def _pop(self):
        with self._lock:
            if self._buffer:
                return self._buffer.popleft(), False
            return None, self._closed

    async def results(self) -> AsyncIterator[FrameDetectionResult]:
        """Yield results in production order until the streamer is closed."""
        wakeup = self._attach()
        logger.debug("Detection consumer attached")
        try:
            while True:
                result, closed = self._pop()
                if result is not None:
                    yield result
                    continue
                if closed:
                    return
                await wakeup.wait()
                wakeup.clear()
        finally:
            self._detach(wakeup)
            logger.debug("Detection consumer detached")
