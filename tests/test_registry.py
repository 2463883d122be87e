import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from conftest import FakeConnection, FakeEngine, RecordingMetrics, wait_until
from virtual_browser.browser.models import StreamState
from virtual_browser.browser.registry import SessionRegistry
from virtual_browser.errors import EngineLaunchError, NavigationError


class StubReaper:
    def __init__(self):
        self.scheduled = 0
        self.sweeps = 0

    def schedule_sweep(self):
        self.scheduled += 1

    async def sweep(self):
        self.sweeps += 1
        return []


@pytest.fixture
def reaper():
    return StubReaper()


@pytest.fixture
def registry(engine, target_config, fast_stream_config, reaper):
    return SessionRegistry(
        engine,
        metrics=RecordingMetrics(),
        reaper=reaper,
        target_config=target_config,
        stream_config=fast_stream_config,
    )


class TestRequestSession:
    @pytest.mark.asyncio
    async def test_creates_streaming_session(self, registry):
        connection = FakeConnection()
        session = await registry.request_session(connection, "example.com")

        assert registry.has_session(connection.id)
        assert len(registry) == 1
        assert session.target.current_url == "https://example.com"
        assert session.streamer.state == StreamState.STREAMING
        assert connection.events_of("navigation") == [{"type": "navigation", "url": "https://example.com"}]

        assert await wait_until(lambda: connection.frames)
        await registry.shutdown_all()

    @pytest.mark.asyncio
    async def test_second_request_replaces_session(self, registry, engine):
        connection = FakeConnection()
        first = await registry.request_session(connection, "one.example")
        second = await registry.request_session(connection, "two.example")

        assert len(registry) == 1
        assert registry.get_session(connection.id) is second
        assert first.streamer.state == StreamState.STOPPED
        assert first.target.closed
        assert not first.target.workspace.exists()
        assert engine.contexts[0].closed is True
        await registry.shutdown_all()

    @pytest.mark.asyncio
    async def test_sessions_are_per_connection(self, registry):
        a, b = FakeConnection("a"), FakeConnection("b")
        await registry.request_session(a, "a.example")
        await registry.request_session(b, "b.example")

        assert len(registry) == 2
        assert {s.connection_id for s in registry.list_sessions()} == {"a", "b"}
        await registry.shutdown_all()

    @pytest.mark.asyncio
    async def test_navigation_failure_cleans_up(self, registry, engine, reaper):
        def slow_pages(context):
            context.pages[0].goto_error = PlaywrightTimeoutError("Timeout exceeded")

        engine.configure = slow_pages
        connection = FakeConnection()

        with pytest.raises(NavigationError):
            await registry.request_session(connection, "slow.example")

        assert not registry.has_session(connection.id)
        assert engine.contexts[0].closed is True
        assert not engine.workspaces[0].exists()
        assert reaper.scheduled == 1
        assert registry.active_workspaces() == []

        errors = connection.events_of("error")
        assert len(errors) == 1
        assert errors[0]["code"] == "NAVIGATION_FAILED"
        assert errors[0]["message"].startswith("Failed to start session:")
        assert registry.metrics.errors[0][0] == "session"

    @pytest.mark.asyncio
    async def test_launch_failure(self, target_config, fast_stream_config, reaper):
        registry = SessionRegistry(
            FakeEngine(fail=True),
            reaper=reaper,
            target_config=target_config,
            stream_config=fast_stream_config,
        )
        connection = FakeConnection()

        with pytest.raises(EngineLaunchError):
            await registry.request_session(connection, "example.com")

        assert connection.events_of("error")[0]["code"] == "SESSION_START_FAILED"
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_failure_report_to_closed_client_still_raises(self, engine, target_config, fast_stream_config):
        engine.fail = True
        registry = SessionRegistry(engine, target_config=target_config, stream_config=fast_stream_config)
        connection = FakeConnection()
        connection.fail_sends = True

        with pytest.raises(EngineLaunchError):
            await registry.request_session(connection, "example.com")

    @pytest.mark.asyncio
    async def test_cancelled_request_releases_target(self, registry, engine):
        gate = asyncio.Event()

        def gated(context):
            context.pages[0].goto_gate = gate

        engine.configure = gated
        connection = FakeConnection()

        task = asyncio.create_task(registry.request_session(connection, "example.com"))
        assert await wait_until(lambda: engine.contexts)
        assert len(registry.active_workspaces()) == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not registry.has_session(connection.id)
        assert engine.contexts[0].closed is True
        assert registry.active_workspaces() == []

    @pytest.mark.asyncio
    async def test_cancelled_replacement_still_releases_old_session(self, registry, engine):
        connection = FakeConnection()
        first = await registry.request_session(connection, "one.example")
        old_workspace = first.target.workspace

        gate = asyncio.Event()
        entered = asyncio.Event()
        clear_cache = first.target.clear_cache

        async def gated_clear_cache():
            entered.set()
            await gate.wait()
            await clear_cache()

        first.target.clear_cache = gated_clear_cache

        task = asyncio.create_task(registry.request_session(connection, "two.example"))
        await asyncio.wait_for(entered.wait(), 1.0)

        task.cancel()
        await asyncio.sleep(0.01)
        # the old session stays registered until its release finishes
        assert registry.get_session(connection.id) is first
        gate.set()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert first.target.closed
        assert engine.contexts[0].closed is True
        assert not old_workspace.exists()
        assert not registry.has_session(connection.id)
        assert len(engine.contexts) == 1
        assert registry.active_workspaces() == []


class TestTeardown:
    @pytest.mark.asyncio
    async def test_teardown_is_idempotent(self, registry, reaper):
        connection = FakeConnection()
        session = await registry.request_session(connection, "example.com")
        workspace = session.target.workspace

        assert await registry.teardown(connection.id) is True
        assert await registry.teardown(connection.id) is False

        assert not registry.has_session(connection.id)
        assert session.streamer.state == StreamState.STOPPED
        assert session.target.closed
        assert not workspace.exists()
        assert reaper.scheduled == 1

    @pytest.mark.asyncio
    async def test_teardown_unknown_connection(self, registry):
        assert await registry.teardown("nobody") is False

    @pytest.mark.asyncio
    async def test_no_frames_after_teardown(self, registry):
        connection = FakeConnection()
        await registry.request_session(connection, "example.com")
        assert await wait_until(lambda: connection.frames)

        await registry.teardown(connection.id)
        sent = len(connection.frames)
        await asyncio.sleep(0.05)
        assert len(connection.frames) == sent

    @pytest.mark.asyncio
    async def test_disconnect_mid_stream_then_new_connection(self, registry, engine):
        first = FakeConnection("first")
        await registry.request_session(first, "example.com")
        assert await wait_until(lambda: first.frames)

        first.closed = True
        await registry.teardown(first.id)
        registry.forget(first.id)

        second = FakeConnection("second")
        session = await registry.request_session(second, "example.com")

        assert len(registry) == 1
        assert registry.get_session("second") is session
        assert [s.connection_id for s in registry.list_sessions()] == ["second"]
        assert registry.active_workspaces() == [session.target.workspace]
        assert engine.contexts[0].closed is True
        await registry.shutdown_all()

    @pytest.mark.asyncio
    async def test_shutdown_all(self, registry, reaper):
        for name in ("a", "b", "c"):
            await registry.request_session(FakeConnection(name), f"{name}.example")

        await registry.shutdown_all()

        assert len(registry) == 0
        assert reaper.sweeps == 1


class TestRouting:
    @pytest.mark.asyncio
    async def test_route_input(self, registry):
        connection = FakeConnection()
        session = await registry.request_session(connection, "example.com")

        delivered = await registry.route_input(connection.id, {"type": "mousemove", "x": 3, "y": 4})

        assert delivered is True
        assert ("move", 3, 4) in session.target.page.mouse.calls
        await registry.shutdown_all()

    @pytest.mark.asyncio
    async def test_route_input_without_session(self, registry):
        assert await registry.route_input("nobody", {"type": "click", "x": 1, "y": 1}) is False

    @pytest.mark.asyncio
    async def test_clear_all_caches(self, registry, engine):
        await registry.request_session(FakeConnection("a"), "a.example")
        await registry.clear_all_caches()
        assert engine.contexts[0].cdp_sessions[-1].sent == [
            "Network.clearBrowserCache",
            "Network.clearBrowserCookies",
        ]
        await registry.shutdown_all()

    @pytest.mark.asyncio
    async def test_session_info(self, registry):
        await registry.request_session(FakeConnection("a"), "example.com")
        info = registry.list_sessions()[0].to_dict()

        assert info["connection_id"] == "a"
        assert info["current_url"] == "https://example.com"
        assert info["stream_state"] in ("streaming", "paused")
        assert info["workspace"]
        await registry.shutdown_all()
