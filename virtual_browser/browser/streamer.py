"""
FrameStreamer - capture loop that feeds rendered frames to one connection.

The loop runs at a fixed inter-iteration delay and never aborts on a
single failed capture. While the render target navigates, iterations are
deferred instead of capturing a half-loaded page.
"""
import asyncio
import time
from typing import Optional

from ..errors import CaptureError, TransportError
from ..logging_config import get_logger
from .models import StreamConfig, StreamState, StreamStats

logger = get_logger("virtual_browser.browser.streamer")


class FrameStreamer:
    """Streams frames from a RenderTarget to a connection."""

    def __init__(self, connection, metrics=None, config: Optional[StreamConfig] = None):
        self.connection = connection
        self.metrics = metrics
        self.config = config or StreamConfig()

        self.state = StreamState.IDLE
        self.target = None

        # Recovery state, kept after stop() for monitoring
        self.recovery_attempts = 0
        self.last_recovery_time: Optional[float] = None
        self.last_error: Optional[str] = None
        self.capture_failures = 0
        self.consecutive_failures = 0

        self.frames_total = 0
        self.frames_since_stats = 0
        self.errors_since_stats = 0
        self.recoveries_since_stats = 0
        self.last_stats_time = 0.0

        self._last_error_log = 0.0
        self._log = logger.bind(connection=connection.id)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def streaming(self) -> bool:
        return self.state in (StreamState.STREAMING, StreamState.PAUSED)

    # ==================== Lifecycle ====================

    def start(self, target):
        """Begin the capture loop against ``target``."""
        if self.state is not StreamState.IDLE:
            raise RuntimeError(f"Streamer cannot start from state {self.state.value}")

        self.target = target
        self.state = StreamState.STREAMING
        self.frames_since_stats = 0
        self.last_stats_time = time.monotonic()
        self._task = asyncio.create_task(self._run())
        logger.debug(f"Frame streamer started for {self.connection.id}")

    def stop(self):
        """Stop streaming, flush final stats and release the target. Idempotent."""
        if self.state is StreamState.STOPPED:
            return
        was_started = self.state is not StreamState.IDLE
        self.state = StreamState.STOPPED
        self._stop_event.set()
        if was_started:
            self.report_metrics()
        self.target = None

    async def join(self, timeout: float = 5.0):
        """Wait for the loop to exit after stop(), cancelling it on timeout."""
        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Frame loop for {self.connection.id} did not exit in {timeout}s, cancelling")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ==================== Capture Loop ====================

    async def _run(self):
        try:
            while self.streaming:
                target = self.target
                if target is None:
                    break

                if target.navigating:
                    self.state = StreamState.PAUSED
                    await self._wait(self.config.navigation_retry_delay)
                    continue

                if self.state is StreamState.PAUSED:
                    self.state = StreamState.STREAMING

                await self._iterate(target)

                if time.monotonic() - self.last_stats_time >= self.config.stats_interval:
                    self.report_metrics()

                await self._wait(self.config.frame_interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Frame loop for {self.connection.id} crashed: {e}")

    async def _wait(self, delay: float):
        """Sleep for ``delay`` seconds, waking early if stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _iterate(self, target):
        await target.keep_alive()

        try:
            frame = await target.capture(self.config.capture_timeout)
        except CaptureError as e:
            self._record_failure(e)
            await self._maybe_recover(target)
            return

        # Navigation may have started while the capture was in flight
        if not self.streaming or target.navigating:
            return

        try:
            self.connection.send_frame(frame)
        except TransportError as e:
            # The disconnect path tears the session down
            self.last_error = str(e)
            return

        self.frames_total += 1
        self.frames_since_stats += 1
        self.consecutive_failures = 0

    def _record_failure(self, error: Exception):
        self.capture_failures += 1
        self.errors_since_stats += 1
        self.consecutive_failures += 1
        self.last_error = str(error)

        now = time.monotonic()
        if now - self._last_error_log >= self.config.error_log_interval:
            self._log.warning(f"Stream error: {error}")
            self._last_error_log = now

    # ==================== Recovery ====================

    def can_recover(self) -> bool:
        if self.recovery_attempts >= self.config.max_recovery_attempts:
            return False
        if self.last_recovery_time is None:
            return True
        return time.monotonic() - self.last_recovery_time >= self.config.recovery_cooldown

    async def _maybe_recover(self, target):
        if self.consecutive_failures < self.config.failures_before_recovery:
            return
        if not self.can_recover():
            return
        if await target.is_valid():
            return

        self.recovery_attempts += 1
        self.recoveries_since_stats += 1
        self.last_recovery_time = time.monotonic()
        self.consecutive_failures = 0
        logger.warning(
            f"Recovering render target for {self.connection.id} "
            f"(attempt {self.recovery_attempts}/{self.config.max_recovery_attempts})"
        )
        try:
            await target.recover()
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Recovery failed: {e}")

    # ==================== Metrics ====================

    def report_metrics(self) -> StreamStats:
        """Emit stats for the interval since the last report and reset it."""
        now = time.monotonic()
        elapsed = now - self.last_stats_time if self.last_stats_time else 0.0
        fps = self.frames_since_stats / elapsed if elapsed > 0 else 0.0
        url = (self.target.current_url if self.target else None) or "unknown"

        stats = StreamStats(
            fps=fps,
            frames_captured=self.frames_since_stats,
            url=url,
            is_streaming=self.streaming,
            recovery_attempts=self.recoveries_since_stats,
            errors=self.errors_since_stats,
        )
        self._log.debug_with("Stream stats", **stats.to_dict())

        if self.metrics:
            try:
                self.metrics.log_stream_stats(stats)
            except Exception as e:
                logger.error(f"Failed to record stream stats: {e}")

        self.frames_since_stats = 0
        self.errors_since_stats = 0
        self.recoveries_since_stats = 0
        self.last_stats_time = now
        return stats

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "frames_total": self.frames_total,
            "capture_failures": self.capture_failures,
            "recovery_attempts": self.recovery_attempts,
            "last_error": self.last_error,
        }
