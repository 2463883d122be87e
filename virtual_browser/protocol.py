"""
Client message handling for one connection.

Inbound messages are JSON objects with a ``type``:

    requestSession  {"url": str}         start or replace the session
    userInput       {"event": {...}}     route an input event to the page
    pong            {}                   heartbeat reply
    mousemove, click, ...                bare input events (older clients)

A session request runs in a background task so heartbeats and input keep
flowing while the page loads. A newer request or a disconnect cancels the
one in flight.
"""
import asyncio
import json
from typing import Any, Optional, Tuple
from urllib.parse import urlsplit

from .browser.models import INPUT_EVENT_TYPES
from .browser.render_target import normalize_url
from .errors import TransportError
from .logging_config import get_logger

logger = get_logger("virtual_browser.protocol")

MAX_URL_LENGTH = 8192

ALLOWED_URL_SCHEMES = {"http", "https"}


def validate_url(url: Any) -> Tuple[bool, str]:
    """
    Validate a URL requested by a client.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(url, str) or not url.strip():
        return False, "URL is empty"

    if len(url) > MAX_URL_LENGTH:
        return False, f"URL exceeds maximum length of {MAX_URL_LENGTH} characters"

    if "\n" in url or "\r" in url:
        return False, "URL contains invalid characters"

    try:
        parsed = urlsplit(normalize_url(url))
    except ValueError as e:
        return False, f"Invalid URL format: {e}"

    if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES:
        return False, f"URL scheme '{parsed.scheme}' is not allowed"

    if not parsed.netloc:
        return False, "URL has no host"

    return True, ""


class MessageHandler:
    """Routes one connection's messages to the session registry."""

    def __init__(self, connection, registry, health):
        self.connection = connection
        self.registry = registry
        self.health = health
        self._request: Optional[asyncio.Task] = None

    async def handle_text(self, raw: str):
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error("INVALID_MESSAGE", "Message is not valid JSON")
            return
        if not isinstance(message, dict):
            await self._send_error("INVALID_MESSAGE", "Message must be a JSON object")
            return
        await self.handle(message)

    async def handle(self, message: dict):
        kind = message.get("type")

        if kind == "requestSession":
            url = message.get("url")
            ok, error = validate_url(url)
            if not ok:
                await self._send_error("INVALID_URL", error)
                return
            self.start_request(url)

        elif kind == "userInput":
            await self._route(message.get("event"))

        elif kind in INPUT_EVENT_TYPES:
            await self._route(message)

        elif kind == "pong":
            self.health.record_pong(self.connection.id)

        elif kind == "ping":
            # Client-side latency check; any traffic proves liveness
            self.health.record_pong(self.connection.id)
            await self._send("pong", {})

        else:
            logger.info(f"Unknown message type from {self.connection.id}: {kind!r}")

    async def _route(self, event: Any):
        if not isinstance(event, dict):
            logger.info(f"Ignoring malformed input from {self.connection.id}")
            return
        try:
            await self.registry.route_input(self.connection.id, event)
        except Exception as e:
            logger.error(f"Input handling error: {e}")

    # ==================== Session Requests ====================

    def start_request(self, url: str) -> asyncio.Task:
        previous = self._request
        if previous and not previous.done():
            previous.cancel()
        self._request = asyncio.create_task(self._run_request(url, previous))
        return self._request

    async def _run_request(self, url: str, previous: Optional[asyncio.Task]):
        if previous is not None:
            await asyncio.wait([previous])
        try:
            session = await self.registry.request_session(self.connection, url)
        except Exception as e:
            # The registry has already reported the failure to the client
            logger.debug(f"Session request for {self.connection.id} failed: {e}")
            return
        await self._send("session", {"status": "ready", "url": session.target.current_url})

    async def wait_for_request(self):
        if self._request is not None:
            await asyncio.wait([self._request])

    async def close(self):
        """Cancel any pending request and tear the session down."""
        request, self._request = self._request, None
        if request and not request.done():
            request.cancel()
            await asyncio.wait([request])
        await self.registry.teardown(self.connection.id)
        self.registry.forget(self.connection.id)
        self.health.unregister(self.connection.id)

    # ==================== Outbound ====================

    async def _send(self, event_type: str, payload: dict):
        try:
            await self.connection.send_event(event_type, payload)
        except TransportError as e:
            logger.debug(f"{e}")

    async def _send_error(self, code: str, message: str):
        await self._send("error", {"code": code, "message": message})
