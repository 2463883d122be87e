"""
Reaper - removes orphaned render target workspaces.

Workspaces live under a shared root and are named with a fixed prefix.
A sweep removes every such directory older than the retention window,
except directories still owned by a live session.
"""
import asyncio
import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from .config import ServerConfig, settings
from .logging_config import get_logger

logger = get_logger("virtual_browser.reaper")

ActiveWorkspaces = Callable[[], Iterable[Path]]


class Reaper:
    """Age-based sweep of workspace directories."""

    def __init__(
        self,
        root: Optional[str] = None,
        prefix: str = "virtual-browser-",
        retention: float = 3600.0,
        active_workspaces: Optional[ActiveWorkspaces] = None,
    ):
        self.root = Path(root or tempfile.gettempdir())
        self.prefix = prefix
        self.retention = retention
        self.active_workspaces = active_workspaces
        self.last_sweep: Optional[float] = None
        self.removed_total = 0
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: ServerConfig) -> "Reaper":
        return cls(
            root=config.workspace_root,
            prefix=config.workspace_prefix,
            retention=config.workspace_retention,
        )

    async def sweep(self) -> List[Path]:
        """Remove expired workspaces and return the removed paths."""
        active = self._active_paths()
        removed = await asyncio.to_thread(self._sweep_sync, time.time(), active)
        self.last_sweep = time.time()
        self.removed_total += len(removed)
        if removed:
            logger.info(f"Reaped {len(removed)} workspace(s) under {self.root}")
        return removed

    def schedule_sweep(self) -> asyncio.Task:
        """Run a sweep in the background."""
        task = asyncio.create_task(self.sweep())
        self._pending.add(task)
        task.add_done_callback(self._sweep_done)
        return task

    def _sweep_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background sweep failed: {task.exception()}")

    def _sweep_sync(self, now: float, active: Set[Path]) -> List[Path]:
        removed: List[Path] = []
        try:
            entries = list(self.root.iterdir())
        except OSError as e:
            logger.error(f"Cleanup error listing {self.root}: {e}")
            return removed

        for path in entries:
            if not path.name.startswith(self.prefix):
                continue
            try:
                if not path.is_dir():
                    continue
                age = now - path.stat().st_mtime
                if age <= self.retention:
                    continue
                if path in active:
                    logger.warning(f"Skipping expired workspace still in use: {path}")
                    continue
                shutil.rmtree(path)
                removed.append(path)
                logger.info(f"Cleaned up: {path}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error(f"Cleanup error for {path}: {e}")

        return removed

    def _active_paths(self) -> Set[Path]:
        if self.active_workspaces is None:
            return set()
        return {Path(p) for p in self.active_workspaces()}


# Global singleton instance
workspace_reaper = Reaper.from_config(settings)
