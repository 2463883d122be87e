"""
Control surface endpoints: health, cleanup, metrics and session listing.
"""
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from ..connection import ws_manager
from ..logging_config import get_logger
from ..monitoring import monitoring_service
from ..reaper import workspace_reaper
from ..scheduler import maintenance_scheduler
from .registry import session_registry

logger = get_logger("virtual_browser.browser.api")

router = APIRouter(tags=["browser"])


def _wants_json(request: Request, format: Optional[str]) -> bool:
    if format:
        return format.lower() == "json"
    accept = request.headers.get("accept", "")
    return "application/json" in accept and "text/plain" not in accept


@router.get("/health")
async def health_check():
    return {
        "status": "ok",
        "sessions": len(session_registry),
        "connections": len(ws_manager),
        "maintenance": maintenance_scheduler.to_dict(),
    }


@router.post("/cleanup")
async def cleanup():
    """Clear every live session's cache, then sweep expired workspaces."""
    try:
        await session_registry.clear_all_caches()
        removed = await workspace_reaper.sweep()
        return {
            "success": True,
            "message": "Cleanup completed",
            "removed": [str(p) for p in removed],
        }
    except Exception as e:
        logger.error(f"Cleanup failed: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})


@router.get("/metrics")
async def metrics(request: Request, format: Optional[str] = None):
    """Prometheus text exposition, or a JSON snapshot when asked for JSON."""
    if _wants_json(request, format):
        return monitoring_service.snapshot()
    return Response(
        content=monitoring_service.exposition(),
        media_type=monitoring_service.content_type,
    )


@router.get("/api/sessions")
async def list_sessions():
    """List live rendering sessions."""
    sessions = session_registry.list_sessions()
    return {"sessions": [s.to_dict() for s in sessions], "count": len(sessions)}
