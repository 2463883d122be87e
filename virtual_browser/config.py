"""
Server configuration.

All settings have defaults and can be overridden with VIRTUAL_BROWSER_*
environment variables, e.g. VIRTUAL_BROWSER_PORT=8080.
"""
import os
import tempfile
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

from .logging_config import get_logger

logger = get_logger("virtual_browser.config")

ENV_PREFIX = "VIRTUAL_BROWSER_"

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


@dataclass
class ServerConfig:
    """Runtime settings for the rendering server."""
    host: str = "127.0.0.1"
    port: int = 3000
    headless: bool = True
    viewport_width: int = 1920
    viewport_height: int = 1080
    navigation_timeout_ms: int = 30000
    capture_timeout: float = 5.0
    frame_rate: float = 30.0
    navigation_retry_delay: float = 1.0
    stats_interval: float = 5.0
    health_interval: float = 30.0
    health_max_missed: int = 3
    health_ping_timeout: float = 5.0
    reap_interval: float = 3600.0
    workspace_retention: float = 3600.0
    workspace_root: str = field(default_factory=tempfile.gettempdir)
    workspace_prefix: str = "virtual-browser-"
    ssl_certfile: str = ""
    ssl_keyfile: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """Build a config from the environment, ignoring invalid values."""
        environ = os.environ if environ is None else environ
        config = cls()
        overrides: Dict[str, Any] = {}

        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            default = getattr(config, f.name)
            try:
                overrides[f.name] = _coerce(raw.strip(), type(default))
            except ValueError:
                logger.warning(
                    f"Ignoring invalid {ENV_PREFIX}{f.name.upper()}={raw!r}, using {default!r}"
                )

        for name, value in overrides.items():
            setattr(config, name, value)
        return config

    @property
    def frame_interval(self) -> float:
        return 1.0 / self.frame_rate if self.frame_rate > 0 else 1.0 / 30

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(raw: str, kind: type) -> Any:
    if kind is bool:
        lowered = raw.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(raw)
    if kind is int:
        return int(raw)
    if kind is float:
        value = float(raw)
        if value < 0:
            raise ValueError(raw)
        return value
    return raw


# Global settings instance
settings = ServerConfig.from_env()
