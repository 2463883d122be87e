import asyncio
import time

import pytest

from conftest import FakeConnection, RecordingMetrics, wait_until
from virtual_browser.browser.models import StreamConfig, StreamState
from virtual_browser.browser.render_target import RenderTarget
from virtual_browser.browser.streamer import FrameStreamer
from virtual_browser.errors import CaptureError


class StubTarget:
    """Render target double with scriptable capture results."""

    def __init__(self):
        self.navigating = False
        self.current_url = "https://example.com"
        self.fail_captures = False
        self.valid = True
        self.captures = 0
        self.recoveries = 0
        self.keep_alives = 0

    async def keep_alive(self):
        self.keep_alives += 1

    async def capture(self, timeout):
        self.captures += 1
        if self.fail_captures:
            raise CaptureError("screenshot failed")
        return b"frame-%d" % self.captures

    async def is_valid(self):
        return self.valid

    async def recover(self):
        self.recoveries += 1


async def _stopped(streamer):
    streamer.stop()
    await streamer.join(1.0)


class TestStreaming:
    @pytest.mark.asyncio
    async def test_first_frame_within_a_second(self, engine, target_config, fast_stream_config):
        target = RenderTarget(engine, config=target_config)
        await target.initialize()
        await target.navigate("example.com")
        connection = FakeConnection()
        streamer = FrameStreamer(connection, config=fast_stream_config)

        streamer.start(target)
        try:
            assert await wait_until(lambda: connection.frames, timeout=1.0)
        finally:
            await _stopped(streamer)

        assert connection.frames[0].startswith(b"\x89PNG")
        assert streamer.frames_total >= 1

    @pytest.mark.asyncio
    async def test_no_frames_while_navigating(self, fast_stream_config):
        target = StubTarget()
        target.navigating = True
        connection = FakeConnection()
        streamer = FrameStreamer(connection, config=fast_stream_config)

        streamer.start(target)
        await asyncio.sleep(0.1)

        assert connection.frames == []
        assert target.captures == 0
        assert streamer.state == StreamState.PAUSED

        target.navigating = False
        assert await wait_until(lambda: connection.frames)
        assert streamer.state == StreamState.STREAMING
        await _stopped(streamer)

    @pytest.mark.asyncio
    async def test_capture_failure_does_not_stop_loop(self, fast_stream_config):
        target = StubTarget()
        target.fail_captures = True
        connection = FakeConnection()
        streamer = FrameStreamer(connection, config=fast_stream_config)

        streamer.start(target)
        assert await wait_until(lambda: streamer.capture_failures >= 2)
        assert streamer.streaming

        target.fail_captures = False
        assert await wait_until(lambda: connection.frames)
        assert streamer.consecutive_failures == 0
        assert streamer.last_error == "screenshot failed"
        await _stopped(streamer)

    @pytest.mark.asyncio
    async def test_closed_connection_is_not_a_capture_failure(self, fast_stream_config):
        target = StubTarget()
        connection = FakeConnection()
        connection.closed = True
        streamer = FrameStreamer(connection, config=fast_stream_config)

        streamer.start(target)
        assert await wait_until(lambda: target.captures >= 3)
        await _stopped(streamer)

        assert streamer.capture_failures == 0
        assert streamer.frames_total == 0
        assert streamer.last_error == "closed"

    @pytest.mark.asyncio
    async def test_keep_alive_runs_each_iteration(self, fast_stream_config):
        target = StubTarget()
        streamer = FrameStreamer(FakeConnection(), config=fast_stream_config)
        streamer.start(target)
        assert await wait_until(lambda: target.captures >= 2)
        await _stopped(streamer)
        assert target.keep_alives >= target.captures


class TestStopping:
    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_flushes_metrics(self, fast_stream_config):
        metrics = RecordingMetrics()
        target = StubTarget()
        connection = FakeConnection()
        streamer = FrameStreamer(connection, metrics=metrics, config=fast_stream_config)

        streamer.start(target)
        assert await wait_until(lambda: connection.frames)

        streamer.stop()
        streamer.stop()
        await streamer.join(1.0)

        assert streamer.state == StreamState.STOPPED
        assert streamer.target is None
        assert len(metrics.stats) == 1
        assert metrics.stats[0].is_streaming is False
        assert metrics.stats[0].url == "https://example.com"

    @pytest.mark.asyncio
    async def test_no_frames_after_stop(self, fast_stream_config):
        target = StubTarget()
        connection = FakeConnection()
        streamer = FrameStreamer(connection, config=fast_stream_config)

        streamer.start(target)
        assert await wait_until(lambda: connection.frames)
        await _stopped(streamer)

        sent = len(connection.frames)
        await asyncio.sleep(0.05)
        assert len(connection.frames) == sent

    @pytest.mark.asyncio
    async def test_stop_before_start(self):
        metrics = RecordingMetrics()
        streamer = FrameStreamer(FakeConnection(), metrics=metrics)
        streamer.stop()
        await streamer.join()
        assert streamer.state == StreamState.STOPPED
        assert metrics.stats == []

    @pytest.mark.asyncio
    async def test_cannot_restart(self, fast_stream_config):
        streamer = FrameStreamer(FakeConnection(), config=fast_stream_config)
        streamer.stop()
        with pytest.raises(RuntimeError):
            streamer.start(StubTarget())


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recovers_after_consecutive_failures(self, fast_stream_config):
        target = StubTarget()
        target.fail_captures = True
        target.valid = False
        streamer = FrameStreamer(FakeConnection(), config=fast_stream_config)

        streamer.start(target)
        assert await wait_until(lambda: target.recoveries >= 1)
        await _stopped(streamer)

        assert streamer.recovery_attempts == target.recoveries

    @pytest.mark.asyncio
    async def test_recovery_attempts_are_bounded(self, fast_stream_config):
        target = StubTarget()
        target.fail_captures = True
        target.valid = False
        streamer = FrameStreamer(FakeConnection(), config=fast_stream_config)

        streamer.start(target)
        assert await wait_until(lambda: streamer.capture_failures >= 20)
        await _stopped(streamer)

        assert target.recoveries == fast_stream_config.max_recovery_attempts
        assert streamer.can_recover() is False
        # preserved after stop for monitoring
        assert streamer.to_dict()["recovery_attempts"] == fast_stream_config.max_recovery_attempts

    @pytest.mark.asyncio
    async def test_valid_target_is_not_recovered(self, fast_stream_config):
        target = StubTarget()
        target.fail_captures = True
        streamer = FrameStreamer(FakeConnection(), config=fast_stream_config)

        streamer.start(target)
        assert await wait_until(lambda: streamer.capture_failures >= 6)
        await _stopped(streamer)
        assert target.recoveries == 0

    def test_cooldown_blocks_recovery(self):
        streamer = FrameStreamer(FakeConnection(), config=StreamConfig(recovery_cooldown=60.0))
        assert streamer.can_recover() is True

        streamer.recovery_attempts = 1
        streamer.last_recovery_time = time.monotonic()
        assert streamer.can_recover() is False


class TestReportMetrics:
    @pytest.mark.asyncio
    async def test_report_resets_interval_counters(self, fast_stream_config):
        metrics = RecordingMetrics()
        target = StubTarget()
        streamer = FrameStreamer(FakeConnection(), metrics=metrics, config=fast_stream_config)

        streamer.start(target)
        assert await wait_until(lambda: streamer.frames_total >= 3)

        stats = streamer.report_metrics()
        assert stats.frames_captured >= 3
        assert stats.fps > 0
        assert stats.is_streaming is True
        assert streamer.frames_since_stats == 0
        await _stopped(streamer)

    @pytest.mark.asyncio
    async def test_periodic_reports(self):
        metrics = RecordingMetrics()
        config = StreamConfig(frame_interval=0.005, stats_interval=0.02)
        streamer = FrameStreamer(FakeConnection(), metrics=metrics, config=config)

        streamer.start(StubTarget())
        assert await wait_until(lambda: len(metrics.stats) >= 2)
        await _stopped(streamer)
