"""
RenderTarget - one managed browser instance and its single active page.

Each target keeps its browser profile in a private workspace directory
under the shared workspace root. The directory name carries a fixed
prefix and the creation timestamp so orphaned profiles can be reaped.
"""
import asyncio
import re
import shutil
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Set, Union
from urllib.parse import parse_qs, urlsplit

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import (
    CaptureError,
    EngineLaunchError,
    InputDispatchError,
    NavigationError,
    NavigationFailure,
    WorkspaceCleanupError,
)
from ..logging_config import get_logger
from .models import (
    ClickEvent,
    KeyboardEvent,
    PageState,
    PointerDownEvent,
    PointerMoveEvent,
    PointerUpEvent,
    RenderTargetConfig,
    ScrollEvent,
    parse_input_event,
)

logger = get_logger("virtual_browser.browser.render_target")

NavigateCallback = Callable[[str], Union[None, Awaitable[None]]]

DEFAULT_SCHEME = "https"

# Query parameters that redirect wrappers use to carry the real destination
REDIRECT_PARAMS = ("url", "q")

SPECIAL_KEYS = frozenset({
    "Enter", "Backspace", "Delete", "Tab", "Escape",
    "ArrowLeft", "ArrowRight", "ArrowUp", "ArrowDown",
    "Home", "End", "PageUp", "PageDown", "\\",
})

MODIFIER_KEYS = frozenset({"Shift", "Control", "Alt", "Meta"})

CLICK_SETTLE_DELAY = 0.1

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

_DETACHED_MARKERS = (
    "not attached",
    "target closed",
    "has been closed",
    "execution context was destroyed",
)


def normalize_url(url: str) -> str:
    """Prefix the default scheme when ``url`` has none."""
    url = url.strip()
    if _SCHEME_RE.match(url) or url.startswith("about:"):
        return url
    return f"{DEFAULT_SCHEME}://{url}"


def unwrap_redirect(url: str) -> Optional[str]:
    """
    Return the destination encoded in a redirect wrapper URL, or None.

    A wrapper carries an absolute http(s) URL on another host in one of
    REDIRECT_PARAMS, e.g. ``https://www.google.com/url?q=https://example.com``.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.query:
        return None

    params = parse_qs(parts.query)
    for name in REDIRECT_PARAMS:
        for value in params.get(name, []):
            candidate = value.strip()
            try:
                inner = urlsplit(candidate)
            except ValueError:
                continue
            if inner.scheme in ("http", "https") and inner.netloc and inner.hostname != parts.hostname:
                return candidate
    return None


def _is_detached(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _DETACHED_MARKERS)


class RenderTarget:
    """A browser context with exactly one page, driven by one session."""

    def __init__(
        self,
        engine,
        config: Optional[RenderTargetConfig] = None,
        metrics=None,
        on_navigate: Optional[NavigateCallback] = None,
    ):
        self.engine = engine
        self.config = config or RenderTargetConfig()
        self.metrics = metrics
        self.on_navigate = on_navigate

        self.context = None
        self.page = None
        self.page_state = PageState.NONE
        self.current_url: Optional[str] = None
        self.navigating = False
        self.workspace: Optional[Path] = None

        self._closed = False
        self._background: Set[asyncio.Task] = set()

    # ==================== Lifecycle ====================

    async def initialize(self):
        """Allocate a workspace, launch the browser and open the page."""
        if self.context is not None:
            return
        if self._closed:
            raise EngineLaunchError("Render target is already closed")

        self.workspace = self._allocate_workspace()
        self.context = await self.engine.launch(self.workspace, self.config)

        try:
            await self._open_page()
        except Exception as e:
            raise EngineLaunchError(f"Failed to open page: {e}") from e

        logger.info(f"Render target ready in {self.workspace}")

    def _allocate_workspace(self) -> Path:
        root = Path(self.config.workspace_root or tempfile.gettempdir())
        name = f"{self.config.workspace_prefix}{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"
        workspace = root / name
        try:
            workspace.mkdir(parents=True)
        except OSError as e:
            raise EngineLaunchError(f"Cannot create workspace {workspace}: {e}") from e
        return workspace

    async def close(self):
        """Close the page, then the browser. Each step is best-effort."""
        if self._closed:
            return
        self._closed = True

        for task in list(self._background):
            task.cancel()

        page, self.page = self.page, None
        if page is not None:
            try:
                await page.close()
            except Exception as e:
                logger.debug(f"Page close failed: {e}")

        context, self.context = self.context, None
        if context is not None:
            try:
                await context.close()
            except Exception as e:
                logger.warning(f"Browser close failed: {e}")

        self.page_state = PageState.CLOSED
        self.navigating = False
        logger.info(f"Render target closed ({self.workspace})")

    async def cleanup_workspace(self):
        """Remove the workspace directory. A missing directory is not an error."""
        if self.workspace is None:
            return
        try:
            await asyncio.to_thread(shutil.rmtree, self.workspace)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise WorkspaceCleanupError(str(self.workspace), e) from e

    @property
    def closed(self) -> bool:
        return self._closed

    # ==================== Page Handle ====================

    async def _open_page(self):
        """Install a fresh page handle, discarding any previous one."""
        old = self.page
        if old is not None:
            try:
                await old.close()
            except Exception:
                pass
            page = await self.context.new_page()
            state = PageState.REPLACED
        else:
            # A persistent context starts with one blank page
            existing = list(self.context.pages)
            page = existing[0] if existing else await self.context.new_page()
            state = PageState.LIVE

        page.set_default_timeout(self.config.navigation_timeout_ms)
        page.on("popup", self._on_popup)
        page.on("load", self._on_load)
        self.page = page
        self.page_state = state

    async def _replace_page(self):
        self.page_state = PageState.STALE
        if self.context is None or self._closed:
            return
        try:
            await self._open_page()
            logger.info("Replaced stale page handle")
        except Exception as e:
            logger.error(f"Page replacement failed: {e}")

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _on_popup(self, popup):
        self._spawn(self._adopt_popup(popup))

    async def _adopt_popup(self, popup):
        """Close an auxiliary window and navigate the main page to its URL."""
        try:
            try:
                await popup.wait_for_load_state("commit", timeout=5000)
            except PlaywrightError:
                pass
            url = popup.url
            logger.info(f"Popup detected: {url}")
            await popup.close()
            if url and url != "about:blank":
                await self.navigate(url)
        except Exception as e:
            logger.error(f"Popup handling error: {e}")

    def _on_load(self, page):
        if page is not self.page or self.navigating or self._closed:
            return
        url = page.url
        if url == self.current_url:
            return
        logger.info(f"Page loaded: {url}")
        self.current_url = url
        self._spawn(self._emit_navigation(url))

    async def _emit_navigation(self, url: str):
        if self.on_navigate is None:
            return
        try:
            result = self.on_navigate(url)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Navigation callback error: {e}")

    # ==================== Navigation ====================

    async def navigate(self, url: str, _unwrap: bool = True) -> str:
        """
        Navigate the page and return the final URL.

        Redirect wrapper URLs are unwrapped once and the real destination is
        loaded instead. Raises NavigationError if the page does not settle.
        """
        target = normalize_url(url)

        if _unwrap:
            destination = unwrap_redirect(target)
            if destination:
                logger.info(f"Detected redirect wrapper, navigating to: {destination}")
                return await self.navigate(destination, _unwrap=False)

        if self.page is None:
            if self.context is None:
                raise NavigationError(NavigationFailure.NO_RESPONSE, target, "Render target is not initialized")
            await self._open_page()

        timer = self.metrics.start_navigation(target) if self.metrics else None
        logger.info(f"Starting navigation to: {target}")
        self.navigating = True
        try:
            try:
                response = await self.page.goto(
                    target,
                    wait_until=self.config.wait_until,
                    timeout=self.config.navigation_timeout_ms,
                )
            except PlaywrightTimeoutError as e:
                raise NavigationError(NavigationFailure.TIMEOUT, target, str(e)) from e
            except PlaywrightError as e:
                raise NavigationError(NavigationFailure.NO_RESPONSE, target, str(e)) from e

            if response is None:
                raise NavigationError(NavigationFailure.NO_RESPONSE, target)

            final_url = self.page.url
            self.current_url = final_url
        except NavigationError as e:
            logger.error(f"Navigation error: {e}")
            if timer:
                timer.error(e)
            raise
        finally:
            self.navigating = False

        if timer:
            timer.success()
        await self._emit_navigation(final_url)
        return final_url

    # ==================== Input ====================

    async def dispatch_input(self, event: Any) -> bool:
        """
        Deliver an input event to the page.

        Returns True if the event was executed. A stale page handle is
        replaced and the event is dropped.
        """
        if isinstance(event, dict):
            parsed = parse_input_event(event)
            if parsed is None:
                logger.info(f"Unknown input type: {event.get('type')!r}")
                return False
            event = parsed

        if self._closed or self.page is None:
            return False

        if not await self.is_valid():
            logger.info("Page not valid, creating new page")
            await self._replace_page()
            return False

        try:
            await self._execute(self.page, event)
            return True
        except InputDispatchError as e:
            logger.warning(f"{e}, replacing page")
            await self._replace_page()
        except PlaywrightError as e:
            logger.error(f"Input handling error: {e}")
        return False

    async def _execute(self, page, event):
        try:
            if isinstance(event, PointerMoveEvent):
                await page.mouse.move(*self._clamp(event.x, event.y))
            elif isinstance(event, ClickEvent):
                x, y = self._clamp(event.x, event.y)
                logger.debug(f"Processing click at: {x}, {y}")
                await page.mouse.click(x, y)
                await asyncio.sleep(CLICK_SETTLE_DELAY)
            elif isinstance(event, PointerDownEvent):
                await page.mouse.down()
            elif isinstance(event, PointerUpEvent):
                await page.mouse.up()
            elif isinstance(event, ScrollEvent):
                await page.mouse.wheel(event.delta_x, event.delta_y)
            elif isinstance(event, KeyboardEvent):
                await self._execute_key(page, event)
            else:
                logger.info(f"Unknown input type: {type(event).__name__}")
        except PlaywrightError as e:
            if _is_detached(e):
                raise InputDispatchError(InputDispatchError.NOT_ATTACHED, str(e)) from e
            raise

    async def _execute_key(self, page, event: KeyboardEvent):
        key = event.key
        if key in MODIFIER_KEYS and event.down is not None:
            if event.down:
                await page.keyboard.down(key)
            else:
                await page.keyboard.up(key)
        elif key in SPECIAL_KEYS or key in MODIFIER_KEYS:
            await page.keyboard.press(key)
        elif event.text:
            await page.keyboard.type(event.text)
        elif len(key) == 1:
            await page.keyboard.type(key)

    def _clamp(self, x: float, y: float):
        x = max(0, min(int(round(x)), self.config.viewport_width))
        y = max(0, min(int(round(y)), self.config.viewport_height))
        return x, y

    # ==================== Probes & Maintenance ====================

    async def is_valid(self) -> bool:
        """Cheap liveness check. Never raises."""
        page = self.page
        if page is None:
            return False
        try:
            if page.is_closed():
                return False
            await page.title()
            return bool(page.url)
        except Exception:
            return False

    async def keep_alive(self):
        """Nudge the pointer so the page keeps rendering."""
        page = self.page
        if page is None:
            return
        try:
            await page.mouse.move(0, 0)
        except Exception:
            pass

    async def capture(self, timeout: float) -> bytes:
        """Screenshot the viewport. Raises CaptureError on failure or timeout."""
        page = self.page
        if page is None:
            raise CaptureError("No page to capture")
        try:
            return await asyncio.wait_for(page.screenshot(type="png"), timeout)
        except asyncio.TimeoutError as e:
            raise CaptureError(f"Capture timed out after {timeout}s") from e
        except Exception as e:
            raise CaptureError(str(e)) from e

    async def clear_cache(self):
        """Best-effort clearing of the browser cache and cookies."""
        if self.page is None or self.context is None:
            return
        try:
            client = await self.context.new_cdp_session(self.page)
            await client.send("Network.clearBrowserCache")
            await client.send("Network.clearBrowserCookies")
            await client.detach()
        except Exception as e:
            logger.info(f"Cache clearing skipped: {e}")

    async def recover(self):
        """Replace the page and reload the current URL."""
        await self._replace_page()
        if self.current_url and self.page is not None:
            await self.navigate(self.current_url, _unwrap=False)

    def owns(self, path: Path) -> bool:
        return self.workspace is not None and Path(path) == self.workspace

    def to_dict(self) -> dict:
        return {
            "workspace": str(self.workspace) if self.workspace else None,
            "current_url": self.current_url,
            "navigating": self.navigating,
            "page_state": self.page_state.value,
            "closed": self._closed,
        }
