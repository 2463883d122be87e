"""
Rendering session data models.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Optional, Dict, Any, Union, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..config import ServerConfig


class PageState(Enum):
    """Lifecycle of the page handle owned by a RenderTarget."""
    NONE = "none"
    LIVE = "live"
    STALE = "stale"
    REPLACED = "replaced"
    CLOSED = "closed"


class StreamState(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    PAUSED = "paused"  # deferred while the target navigates
    STOPPED = "stopped"


@dataclass
class RenderTargetConfig:
    """Configuration for a render target."""
    headless: bool = True
    viewport_width: int = 1920
    viewport_height: int = 1080
    device_scale_factor: float = 1.0
    navigation_timeout_ms: int = 30000
    wait_until: str = "networkidle"
    workspace_root: str = ""
    workspace_prefix: str = "virtual-browser-"
    launch_args: tuple = (
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-accelerated-2d-canvas",
        "--disable-gpu",
    )

    @classmethod
    def from_server_config(cls, config: ServerConfig) -> "RenderTargetConfig":
        return cls(
            headless=config.headless,
            viewport_width=config.viewport_width,
            viewport_height=config.viewport_height,
            navigation_timeout_ms=config.navigation_timeout_ms,
            workspace_root=config.workspace_root,
            workspace_prefix=config.workspace_prefix,
        )


@dataclass
class StreamConfig:
    """Cadence and recovery policy for a frame streamer."""
    frame_interval: float = 1.0 / 30
    navigation_retry_delay: float = 1.0
    capture_timeout: float = 5.0
    stats_interval: float = 5.0
    max_recovery_attempts: int = 3
    recovery_cooldown: float = 5.0
    failures_before_recovery: int = 3
    error_log_interval: float = 5.0

    @classmethod
    def from_server_config(cls, config: ServerConfig) -> "StreamConfig":
        return cls(
            frame_interval=config.frame_interval,
            navigation_retry_delay=config.navigation_retry_delay,
            capture_timeout=config.capture_timeout,
            stats_interval=config.stats_interval,
        )


@dataclass
class StreamStats:
    """One metrics report from a frame streamer."""
    fps: float
    frames_captured: int
    url: str
    is_streaming: bool
    recovery_attempts: int = 0
    errors: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {
            "fps": round(self.fps, 1),
            "frames_captured": self.frames_captured,
            "url": self.url,
            "is_streaming": self.is_streaming,
            "recovery_attempts": self.recovery_attempts,
            "errors": self.errors,
            "timestamp": self.timestamp,
        }


# ==================== Input Events ====================

class _InputEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PointerMoveEvent(_InputEvent):
    type: Literal["mousemove"]
    x: float = 0
    y: float = 0


class PointerDownEvent(_InputEvent):
    type: Literal["mousedown"]


class PointerUpEvent(_InputEvent):
    type: Literal["mouseup"]


class ClickEvent(_InputEvent):
    type: Literal["click"]
    x: float = 0
    y: float = 0


class ScrollEvent(_InputEvent):
    type: Literal["wheel", "scroll"]
    delta_x: float = Field(0, alias="deltaX")
    delta_y: float = Field(0, alias="deltaY")


class KeyboardEvent(_InputEvent):
    type: Literal["keyboard"]
    key: str = Field("", max_length=64)
    text: Optional[str] = Field(None, max_length=10000)
    down: Optional[bool] = None


InputEvent = Annotated[
    Union[PointerMoveEvent, PointerDownEvent, PointerUpEvent, ClickEvent, ScrollEvent, KeyboardEvent],
    Field(discriminator="type"),
]

INPUT_EVENT_TYPES = frozenset({"mousemove", "mousedown", "mouseup", "click", "wheel", "scroll", "keyboard"})

_input_adapter = TypeAdapter(InputEvent)


def parse_input_event(data: Any) -> Optional[_InputEvent]:
    """Parse a raw input message, returning None for unknown or malformed events."""
    if not isinstance(data, dict) or data.get("type") not in INPUT_EVENT_TYPES:
        return None
    try:
        return _input_adapter.validate_python(data)
    except ValidationError:
        return None


@dataclass
class SessionInfo:
    """Snapshot of a registered session."""
    connection_id: str
    current_url: Optional[str]
    navigating: bool
    stream_state: StreamState
    workspace: str
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "current_url": self.current_url,
            "navigating": self.navigating,
            "stream_state": self.stream_state.value,
            "workspace": self.workspace,
            "created_at": self.created_at,
        }
