"""
BrowserEngine - process-wide Playwright driver.

Launches one persistent Chromium context per render target, bound to the
target's private workspace directory.
"""
import asyncio
from pathlib import Path
from typing import Any

from ..errors import EngineLaunchError
from ..logging_config import get_logger
from .models import RenderTargetConfig

logger = get_logger("virtual_browser.browser.engine")


class BrowserEngine:
    """Owns the Playwright driver shared by all render targets."""

    def __init__(self):
        self._playwright = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def _ensure_playwright(self):
        """Lazy-init Playwright on first use."""
        async with self._lock:
            if not self._initialized:
                from playwright.async_api import async_playwright
                self._playwright = await async_playwright().start()
                self._initialized = True
                logger.info("Playwright initialized")

    async def launch(self, workspace: Path, config: RenderTargetConfig) -> Any:
        """Launch a browser context that keeps its profile in ``workspace``."""
        try:
            await self._ensure_playwright()
            return await self._playwright.chromium.launch_persistent_context(
                str(workspace),
                headless=config.headless,
                args=list(config.launch_args),
                viewport={
                    "width": config.viewport_width,
                    "height": config.viewport_height,
                },
                device_scale_factor=config.device_scale_factor,
            )
        except Exception as e:
            logger.error(f"Failed to launch browser in {workspace}: {e}")
            raise EngineLaunchError(str(e)) from e

    async def shutdown(self):
        """Stop the Playwright driver. Called on server shutdown."""
        async with self._lock:
            if self._playwright:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    logger.error(f"Error stopping Playwright: {e}")
                self._playwright = None
                self._initialized = False
                logger.info("Playwright stopped")


# Global singleton instance
browser_engine = BrowserEngine()
