"""
SessionRegistry - one rendering session per client connection.

Creation and teardown for a connection are serialized by a per-connection
lock. A session is registered only once its render target has navigated
and its streamer is running, and it is unregistered only after both have
been released.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..config import settings
from ..errors import NavigationError, WorkspaceCleanupError
from ..logging_config import get_logger
from ..monitoring import monitoring_service
from ..reaper import workspace_reaper
from .engine import browser_engine
from .models import RenderTargetConfig, SessionInfo, StreamConfig
from .render_target import RenderTarget
from .streamer import FrameStreamer

logger = get_logger("virtual_browser.browser.registry")

STREAMER_JOIN_TIMEOUT = 5.0


@dataclass
class Session:
    connection_id: str
    target: RenderTarget
    streamer: FrameStreamer
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def info(self) -> SessionInfo:
        return SessionInfo(
            connection_id=self.connection_id,
            current_url=self.target.current_url,
            navigating=self.target.navigating,
            stream_state=self.streamer.state,
            workspace=str(self.target.workspace) if self.target.workspace else "",
            created_at=self.created_at,
        )


class SessionRegistry:
    """Maps connection ids to their (RenderTarget, FrameStreamer) pair."""

    def __init__(
        self,
        engine,
        metrics=None,
        reaper=None,
        target_config: Optional[RenderTargetConfig] = None,
        stream_config: Optional[StreamConfig] = None,
    ):
        self.engine = engine
        self.metrics = metrics
        self.reaper = reaper
        self.target_config = target_config or RenderTargetConfig()
        self.stream_config = stream_config or StreamConfig()
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._constructing: Set[RenderTarget] = set()

    def _lock_for(self, connection_id: str) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock

    # ==================== Session Lifecycle ====================

    async def request_session(self, connection, url: str) -> Session:
        """
        Replace any session for ``connection`` with a new one showing ``url``.

        On failure everything built so far is torn down, the connection gets
        an ``error`` message and the exception propagates.
        """
        connection_id = connection.id
        async with self._lock_for(connection_id):
            if connection_id in self._sessions:
                logger.info(f"Replacing session for {connection_id}")
                await self._teardown_locked(connection_id)

            async def notify_navigation(final_url: str):
                await connection.send_event("navigation", {"url": final_url})

            target = RenderTarget(
                self.engine,
                config=self.target_config,
                metrics=self.metrics,
                on_navigate=notify_navigation,
            )
            streamer: Optional[FrameStreamer] = None
            self._constructing.add(target)
            try:
                await target.initialize()
                await target.navigate(url)
                streamer = FrameStreamer(connection, metrics=self.metrics, config=self.stream_config)
                streamer.start(target)
            except Exception as e:
                logger.error(f"Session setup error for {connection_id}: {e}")
                if self.metrics:
                    self.metrics.log_error("session", e, url)
                await self._release_shielded(target, streamer)
                code = "NAVIGATION_FAILED" if isinstance(e, NavigationError) else "SESSION_START_FAILED"
                try:
                    await connection.send_event("error", {
                        "code": code,
                        "message": f"Failed to start session: {e}",
                    })
                except Exception as send_error:
                    logger.debug(f"Could not report session failure to {connection_id}: {send_error}")
                raise
            except asyncio.CancelledError:
                logger.info(f"Session request for {connection_id} cancelled")
                await self._release_shielded(target, streamer)
                raise
            finally:
                self._constructing.discard(target)

            session = Session(connection_id=connection_id, target=target, streamer=streamer)
            self._sessions[connection_id] = session
            logger.info(f"Session started for {connection_id}: {target.current_url}")
            return session

    async def teardown(self, connection_id: str) -> bool:
        """Stop and release the session for ``connection_id``. Idempotent."""
        async with self._lock_for(connection_id):
            return await self._teardown_locked(connection_id)

    async def _teardown_locked(self, connection_id: str) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        try:
            await self._release_shielded(session.target, session.streamer)
        finally:
            self._sessions.pop(connection_id, None)
        logger.info(f"Session cleaned up: {connection_id}")
        return True

    async def _release_shielded(self, target: RenderTarget, streamer: Optional[FrameStreamer]):
        """Run ``_release`` to completion even if the caller is cancelled."""
        release = asyncio.ensure_future(self._release(target, streamer))
        try:
            await asyncio.shield(release)
        except asyncio.CancelledError:
            # The release task keeps running on its own if this wait is cancelled too
            await asyncio.wait([release])
            raise

    async def _release(self, target: RenderTarget, streamer: Optional[FrameStreamer]):
        """Streamer stop, then cache clear, then target close and workspace removal."""
        if streamer is not None:
            streamer.stop()
            await streamer.join(STREAMER_JOIN_TIMEOUT)

        await target.clear_cache()
        await target.close()

        try:
            await target.cleanup_workspace()
        except WorkspaceCleanupError as e:
            logger.error(f"Directory cleanup error: {e}")

        if self.reaper is not None:
            self.reaper.schedule_sweep()

    def forget(self, connection_id: str):
        """Drop bookkeeping for a connection that has gone away."""
        if connection_id not in self._sessions:
            self._locks.pop(connection_id, None)

    async def shutdown_all(self):
        """Tear down every session, then run a final reaper pass."""
        for connection_id in list(self._sessions.keys()):
            try:
                await self.teardown(connection_id)
            except Exception as e:
                logger.error(f"Cleanup error for {connection_id}: {e}")

        if self.reaper is not None:
            await self.reaper.sweep()
        logger.info("All sessions shut down")

    # ==================== Routing & Queries ====================

    async def route_input(self, connection_id: str, event: Any) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        return await session.target.dispatch_input(event)

    async def clear_all_caches(self):
        for session in list(self._sessions.values()):
            await session.target.clear_cache()

    def get_session(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def has_session(self, connection_id: str) -> bool:
        return connection_id in self._sessions

    def list_sessions(self) -> List[SessionInfo]:
        return [s.info() for s in self._sessions.values()]

    def active_workspaces(self) -> List[Path]:
        targets = [s.target for s in self._sessions.values()] + list(self._constructing)
        return [t.workspace for t in targets if t.workspace is not None]

    def __len__(self) -> int:
        return len(self._sessions)


# Global singleton instance
session_registry = SessionRegistry(
    browser_engine,
    metrics=monitoring_service,
    reaper=workspace_reaper,
    target_config=RenderTargetConfig.from_server_config(settings),
    stream_config=StreamConfig.from_server_config(settings),
)
workspace_reaper.active_workspaces = session_registry.active_workspaces
