"""
WebSocket connections to rendering clients.

Frames go through a single-slot buffer drained by a sender task. When the
client cannot keep up the older frame is replaced, so a slow client always
receives the most recent frame instead of a growing backlog.
"""
import asyncio
import uuid
from typing import Dict, Optional

from fastapi import WebSocket

from .errors import TransportError
from .logging_config import get_logger

logger = get_logger("virtual_browser.connection")


class WebSocketConnection:
    """One client connection. Binary messages are frames, text messages are JSON events."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex[:12]
        self.websocket = websocket
        self.frames_sent = 0
        self.frames_dropped = 0
        self._frames: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._send_lock = asyncio.Lock()
        self._sender: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def accept(self):
        await self.websocket.accept()
        self._sender = asyncio.create_task(self._frame_sender_loop())

    def send_frame(self, frame: bytes):
        """Queue a frame, replacing one the client has not received yet."""
        if self._closed:
            raise TransportError(f"Connection {self.id} is closed")
        if self._frames.full():
            try:
                self._frames.get_nowait()
                self.frames_dropped += 1
            except asyncio.QueueEmpty:
                pass
        self._frames.put_nowait(frame)

    async def _frame_sender_loop(self):
        try:
            while not self._closed:
                frame = await self._frames.get()
                async with self._send_lock:
                    await self.websocket.send_bytes(frame)
                self.frames_sent += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Frame sender for {self.id} stopped: {e}")

    async def send_event(self, event_type: str, payload: dict):
        if self._closed:
            raise TransportError(f"Connection {self.id} is closed")
        try:
            async with self._send_lock:
                await self.websocket.send_json({"type": event_type, **payload})
        except Exception as e:
            raise TransportError(f"Send to {self.id} failed: {e}") from e

    async def close(self, code: int = 1000):
        if self._closed:
            return
        self._closed = True
        await self._stop_sender()
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Close of {self.id} failed: {e}")

    async def _stop_sender(self):
        sender, self._sender = self._sender, None
        if sender and not sender.done():
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    async def detach(self):
        """Release resources after the client disconnected."""
        self._closed = True
        await self._stop_sender()


class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, WebSocketConnection] = {}

    async def connect(self, websocket: WebSocket) -> WebSocketConnection:
        connection = WebSocketConnection(websocket)
        await connection.accept()
        self.active_connections[connection.id] = connection
        return connection

    async def disconnect(self, connection: WebSocketConnection):
        self.active_connections.pop(connection.id, None)
        await connection.detach()

    def get(self, connection_id: str) -> Optional[WebSocketConnection]:
        return self.active_connections.get(connection_id)

    def __len__(self) -> int:
        return len(self.active_connections)


ws_manager = ConnectionManager()
