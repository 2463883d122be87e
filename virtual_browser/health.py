"""
HealthMonitor - heartbeats for client connections.

Each sweep counts one outstanding ping per connection and sends a new
ping. Any pong resets the count. A connection that has missed more than
``max_missed`` pings is closed, which tears its session down through the
normal disconnect path.
"""
import asyncio
from typing import Dict, List

from .config import settings
from .logging_config import get_logger

logger = get_logger("virtual_browser.health")

# WebSocket close code for clients that stopped answering heartbeats
CLOSE_UNRESPONSIVE = 4008


class ConnectionHealth:
    """Missed-ping counter for one connection."""

    def __init__(self, connection):
        self.connection = connection
        self.missed = 0

    def to_dict(self) -> dict:
        return {"connection_id": self.connection.id, "missed": self.missed}


class HealthMonitor:
    """Tracks heartbeat replies and evicts unresponsive connections."""

    def __init__(self, max_missed: int = 3, ping_timeout: float = 5.0):
        self.max_missed = max_missed
        self.ping_timeout = ping_timeout
        self._connections: Dict[str, ConnectionHealth] = {}

    def register(self, connection):
        self._connections[connection.id] = ConnectionHealth(connection)

    def unregister(self, connection_id: str):
        self._connections.pop(connection_id, None)

    def record_pong(self, connection_id: str):
        health = self._connections.get(connection_id)
        if health:
            health.missed = 0

    def missed(self, connection_id: str) -> int:
        health = self._connections.get(connection_id)
        return health.missed if health else 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def sweep(self) -> List[str]:
        """Ping every connection at once; return the ids that were disconnected.

        Each ping or close is bounded by ``ping_timeout`` so one stuck
        client cannot hold up the others. A ping that times out simply
        stays counted as missed.
        """
        entries = list(self._connections.items())
        results = await asyncio.gather(*(self._check(cid, health) for cid, health in entries))
        return [cid for (cid, _), evicted in zip(entries, results) if evicted]

    async def _check(self, connection_id: str, health: ConnectionHealth) -> bool:
        health.missed += 1

        if health.missed > self.max_missed:
            logger.warning(f"Socket not responding, disconnecting: {connection_id}")
            self.unregister(connection_id)
            try:
                await asyncio.wait_for(health.connection.close(CLOSE_UNRESPONSIVE), self.ping_timeout)
            except asyncio.TimeoutError:
                logger.error(f"Timed out closing {connection_id}")
            except Exception as e:
                logger.error(f"Failed to close {connection_id}: {e}")
            return True

        try:
            await asyncio.wait_for(health.connection.send_event("ping", {}), self.ping_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Ping to {connection_id} timed out")
        except Exception as e:
            logger.debug(f"Ping to {connection_id} failed: {e}")
        return False

    def to_dict(self) -> dict:
        return {
            "max_missed": self.max_missed,
            "connections": [h.to_dict() for h in self._connections.values()],
        }


# Global singleton instance
health_monitor = HealthMonitor(
    max_missed=settings.health_max_missed,
    ping_timeout=settings.health_ping_timeout,
)
