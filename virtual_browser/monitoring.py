"""
MonitoringService - Prometheus metrics for rendering sessions.

Every service instance owns a private CollectorRegistry so several
instances (e.g. in tests) never collide on metric names.

URL labels carry only the host, so series grow with the number of sites
visited rather than the number of pages. The per-host gauges of a stream
are dropped when it stops.
"""
import time
from typing import Any, Callable, Dict
from urllib.parse import urlsplit

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

from .logging_config import get_logger

logger = get_logger("virtual_browser.monitoring")

DURATION_BUCKETS = (0.1, 0.3, 0.5, 1, 2, 5)


def url_label(url: str) -> str:
    """Reduce a URL to the host used as its metric label."""
    if not url:
        return "unknown"
    return urlsplit(url).hostname or url


class NavigationTimer:
    """Times one navigation; resolve with success() or error()."""

    def __init__(self, service: "MonitoringService", url: str):
        self._service = service
        self._url = url
        self._start = time.perf_counter()
        self._done = False

    def _finish(self, status: str) -> float:
        duration = time.perf_counter() - self._start
        if not self._done:
            self._done = True
            self._service.navigation_duration.labels(url=url_label(self._url), status=status).observe(duration)
        return duration

    def success(self):
        duration = self._finish("success")
        logger.debug(f"Recording navigation success: {duration:.2f}s for {self._url}")

    def error(self, error: Exception):
        duration = self._finish("error")
        logger.debug(f"Recording navigation error: {duration:.2f}s for {self._url}")
        self._service.log_error("navigation", error, self._url)


class MonitoringService:
    """Collects connection, stream, navigation and request metrics."""

    def __init__(self, registry: CollectorRegistry = None, collect_process_metrics: bool = True):
        self.registry = registry or CollectorRegistry()
        if collect_process_metrics:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)

        self.active_connections = Gauge(
            "virtual_browser_active_connections",
            "Number of active browser sessions",
            registry=self.registry,
        )
        self.fps = Gauge(
            "virtual_browser_fps_current",
            "Current FPS of browser sessions",
            ["url"],
            registry=self.registry,
        )
        self.frame_counter = Counter(
            "virtual_browser_frames_total",
            "Total number of frames captured",
            ["url"],
            registry=self.registry,
        )
        self.errors = Counter(
            "virtual_browser_errors_total",
            "Total number of errors",
            ["type", "url"],
            registry=self.registry,
        )
        self.navigation_duration = Histogram(
            "virtual_browser_navigation_duration_seconds",
            "Duration of page navigations",
            ["url", "status"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.request_duration = Histogram(
            "virtual_browser_request_duration_seconds",
            "Duration of HTTP requests",
            ["method", "route", "status"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.streaming_status = Gauge(
            "virtual_browser_streaming_status",
            "Streaming status of browser sessions",
            ["url"],
            registry=self.registry,
        )
        self.recovery_attempts = Counter(
            "virtual_browser_recovery_attempts_total",
            "Total number of recovery attempts",
            ["url"],
            registry=self.registry,
        )

        self.active_connections.set(0)
        self.fps.labels(url="none").set(0)

    # ==================== Collaborator Contract ====================

    def log_connection(self, connection_id: str) -> Callable[[], None]:
        """Count a connection; the returned function uncounts it once."""
        logger.info(f"New connection: {connection_id}")
        self.active_connections.inc()
        disposed = False

        def dispose():
            nonlocal disposed
            if disposed:
                return
            disposed = True
            logger.info(f"Connection closed: {connection_id}")
            self.active_connections.dec()

        return dispose

    def log_stream_stats(self, stats):
        url = url_label(stats.url)
        self.fps.labels(url=url).set(stats.fps)
        if stats.frames_captured > 0:
            self.frame_counter.labels(url=url).inc(stats.frames_captured)
        self.streaming_status.labels(url=url).set(1 if stats.is_streaming else 0)
        if stats.recovery_attempts > 0:
            self.recovery_attempts.labels(url=url).inc(stats.recovery_attempts)
        if stats.errors > 0:
            self.errors.labels(type="capture", url=url).inc(stats.errors)
        if not stats.is_streaming:
            self.release_stream(url)

    def release_stream(self, url: str):
        """Drop the gauge series of a stream that has stopped."""
        for gauge in (self.fps, self.streaming_status):
            try:
                gauge.remove(url)
            except KeyError:
                pass

    def log_error(self, kind: str, error: Exception, url: str = "unknown"):
        logger.error(f"Error [{kind}]: {error}")
        self.errors.labels(type=kind, url=url_label(url)).inc()

    def start_navigation(self, url: str) -> NavigationTimer:
        logger.debug(f"Starting navigation timing for: {url}")
        return NavigationTimer(self, url)

    def track_request(self, method: str, route: str) -> Callable[..., None]:
        """Start timing a request; call the returned function when it ends."""
        start = time.perf_counter()

        def end(status: str = "success"):
            duration = time.perf_counter() - start
            self.request_duration.labels(method=method, route=route, status=status).observe(duration)

        return end

    # ==================== Export ====================

    def snapshot(self) -> Dict[str, Any]:
        """Structured view of every sample in the registry."""
        result: Dict[str, Any] = {}
        for metric in self.registry.collect():
            result[metric.name] = {
                "type": metric.type,
                "help": metric.documentation,
                "samples": [
                    {"name": s.name, "labels": dict(s.labels), "value": s.value}
                    for s in metric.samples
                ],
            }
        return result

    def exposition(self) -> bytes:
        return generate_latest(self.registry)

    def get_metrics(self) -> Dict[str, Any]:
        return {"json": self.snapshot(), "prometheus": self.exposition().decode("utf-8")}

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


# Global singleton instance
monitoring_service = MonitoringService()
