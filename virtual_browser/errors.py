"""
Error taxonomy for rendering sessions.
"""
from enum import Enum


class VirtualBrowserError(Exception):
    """Base exception for rendering session errors"""
    pass


class EngineLaunchError(VirtualBrowserError):
    """The browser engine instance could not be started"""
    pass


class NavigationFailure(Enum):
    TIMEOUT = "timeout"
    NO_RESPONSE = "no_response"


class NavigationError(VirtualBrowserError):
    """A page did not settle after navigation"""
    def __init__(self, kind: NavigationFailure, url: str, message: str = ""):
        self.kind = kind
        self.url = url
        super().__init__(message or f"Navigation to {url} failed: {kind.value}")


class CaptureError(VirtualBrowserError):
    """A frame capture failed or timed out"""
    pass


class InputDispatchError(VirtualBrowserError):
    """An input event could not be delivered to the page"""
    NOT_ATTACHED = "not_attached"

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or f"Input dispatch failed: {reason}")


class WorkspaceCleanupError(VirtualBrowserError):
    """A workspace directory could not be removed"""
    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to remove workspace {path}: {cause}")


class TransportError(VirtualBrowserError):
    """The client connection failed"""
    pass
