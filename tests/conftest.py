"""
Shared fakes standing in for Playwright objects and client connections.
"""
import asyncio
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from virtual_browser.browser.models import RenderTargetConfig, StreamConfig
from virtual_browser.errors import EngineLaunchError, TransportError


class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status


class FakeMouse:
    def __init__(self, page: "FakePage"):
        self.page = page
        self.calls: List[tuple] = []

    async def _record(self, *call):
        self.page._check_attached()
        self.calls.append(call)

    async def move(self, x, y):
        await self._record("move", x, y)

    async def click(self, x, y):
        await self._record("click", x, y)

    async def down(self):
        await self._record("down")

    async def up(self):
        await self._record("up")

    async def wheel(self, dx, dy):
        await self._record("wheel", dx, dy)


class FakeKeyboard:
    def __init__(self, page: "FakePage"):
        self.page = page
        self.calls: List[tuple] = []

    async def press(self, key):
        self.page._check_attached()
        self.calls.append(("press", key))

    async def down(self, key):
        self.calls.append(("down", key))

    async def up(self, key):
        self.calls.append(("up", key))

    async def type(self, text):
        self.calls.append(("type", text))


class FakePage:
    """Enough of playwright.async_api.Page for RenderTarget."""

    def __init__(self, context: "FakeContext" = None):
        self.context = context
        self.url = "about:blank"
        self.mouse = FakeMouse(self)
        self.keyboard = FakeKeyboard(self)
        self.handlers: Dict[str, List[Callable]] = {}
        self.closed = False
        self.detached = False
        self.title_error: Optional[Exception] = None
        self.goto_calls: List[str] = []
        self.goto_error: Optional[Exception] = None
        self.goto_gate: Optional[asyncio.Event] = None
        self.goto_returns_none = False
        self.redirects: Dict[str, str] = {}
        self.screenshot_error: Optional[Exception] = None
        self.screenshot_delay = 0.0
        self.screenshots = 0
        self.close_error: Optional[Exception] = None
        self.default_timeout = None

    def _check_attached(self):
        if self.detached:
            from playwright.async_api import Error as PlaywrightError
            raise PlaywrightError("Protocol error: Target closed. Session not attached")

    def on(self, event: str, handler: Callable):
        self.handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args):
        for handler in self.handlers.get(event, []):
            handler(*args)

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    def is_closed(self) -> bool:
        return self.closed

    async def title(self) -> str:
        if self.title_error:
            raise self.title_error
        return "Fake Page"

    async def goto(self, url, wait_until=None, timeout=None):
        self.goto_calls.append(url)
        if self.goto_gate is not None:
            await self.goto_gate.wait()
        if self.goto_error is not None:
            raise self.goto_error
        if self.goto_returns_none:
            return None
        self.url = self.redirects.get(url, url)
        return FakeResponse()

    async def screenshot(self, type="png"):
        if self.screenshot_delay:
            await asyncio.sleep(self.screenshot_delay)
        if self.screenshot_error is not None:
            raise self.screenshot_error
        self.screenshots += 1
        return b"\x89PNG-frame-%d" % self.screenshots

    async def wait_for_load_state(self, state="load", timeout=None):
        return None

    async def close(self):
        if self.close_error:
            raise self.close_error
        self.closed = True


class FakeCDPSession:
    def __init__(self, error: Optional[Exception] = None):
        self.sent: List[str] = []
        self.error = error
        self.detached = False

    async def send(self, method, params=None):
        if self.error:
            raise self.error
        self.sent.append(method)

    async def detach(self):
        self.detached = True


class FakeContext:
    def __init__(self):
        self.pages: List[FakePage] = [FakePage(self)]
        self.closed = False
        self.close_error: Optional[Exception] = None
        self.cdp_error: Optional[Exception] = None
        self.cdp_sessions: List[FakeCDPSession] = []
        self.page_factory: Callable[["FakeContext"], FakePage] = FakePage

    async def new_page(self) -> FakePage:
        page = self.page_factory(self)
        self.pages.append(page)
        return page

    async def new_cdp_session(self, page):
        session = FakeCDPSession(self.cdp_error)
        self.cdp_sessions.append(session)
        return session

    async def close(self):
        if self.close_error:
            raise self.close_error
        self.closed = True


class FakeEngine:
    """Stands in for BrowserEngine; hands out FakeContexts."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.contexts: List[FakeContext] = []
        self.workspaces: List[Path] = []
        self.configure: Optional[Callable[[FakeContext], None]] = None

    async def launch(self, workspace, config):
        self.workspaces.append(Path(workspace))
        if self.fail:
            raise EngineLaunchError("chromium failed to start")
        context = FakeContext()
        if self.configure:
            self.configure(context)
        self.contexts.append(context)
        return context

    async def shutdown(self):
        pass


class FakeConnection:
    """Records frames and events the server sends to a client."""

    def __init__(self, connection_id: str = "conn-1"):
        self.id = connection_id
        self.frames: List[bytes] = []
        self.events: List[dict] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.fail_sends = False

    def send_frame(self, frame: bytes):
        if self.closed:
            raise TransportError("closed")
        self.frames.append(frame)

    async def send_event(self, event_type: str, payload: dict):
        if self.fail_sends or self.closed:
            raise TransportError("closed")
        self.events.append({"type": event_type, **payload})

    async def close(self, code: int = 1000):
        self.closed = True
        self.close_code = code

    def events_of(self, event_type: str) -> List[dict]:
        return [e for e in self.events if e["type"] == event_type]


class RecordingMetrics:
    """Minimal metrics collaborator that remembers what it was told."""

    def __init__(self):
        self.stats = []
        self.errors = []
        self.navigations = []

    def log_stream_stats(self, stats):
        self.stats.append(stats)

    def log_error(self, kind, error, url="unknown"):
        self.errors.append((kind, str(error), url))

    def start_navigation(self, url):
        metrics = self

        class _Timer:
            def success(self):
                metrics.navigations.append((url, "success"))

            def error(self, err):
                metrics.navigations.append((url, "error"))

        return _Timer()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def target_config(tmp_path):
    return RenderTargetConfig(workspace_root=str(tmp_path), navigation_timeout_ms=1000)


@pytest.fixture
def fast_stream_config():
    return StreamConfig(
        frame_interval=0.005,
        navigation_retry_delay=0.01,
        capture_timeout=0.5,
        stats_interval=60.0,
        recovery_cooldown=0.0,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005):
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True
