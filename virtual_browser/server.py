import os
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .browser.api import router as browser_router
from .browser.engine import browser_engine
from .browser.registry import session_registry
from .config import settings
from .connection import ws_manager
from .health import health_monitor
from .logging_config import setup_logging, get_logger
from .middleware import RequestMetricsMiddleware, SecurityHeadersMiddleware, get_cors_origins
from .monitoring import monitoring_service
from .protocol import MessageHandler
from .reaper import workspace_reaper
from .scheduler import JobKind, maintenance_scheduler

setup_logging()
logger = get_logger("virtual_browser.server")

app = FastAPI(title="Virtual Browser", version=__version__)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestMetricsMiddleware, metrics=monitoring_service)

cors_origins = get_cors_origins()
allow_all = "*" in cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all else cors_origins,
    allow_credentials=not allow_all,  # Cannot use credentials with wildcard origin
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)

app.include_router(browser_router)


@app.on_event("startup")
async def startup_event():
    maintenance_scheduler.add(JobKind.WORKSPACE_REAP, workspace_reaper.sweep, settings.reap_interval)
    maintenance_scheduler.add(JobKind.HEALTH_CHECK, health_monitor.sweep, settings.health_interval)
    maintenance_scheduler.start()
    logger.info(f"Rendering server ready (workspaces under {workspace_reaper.root})")


@app.on_event("shutdown")
async def shutdown_event():
    """Graceful shutdown"""
    maintenance_scheduler.stop()
    await session_registry.shutdown_all()
    logger.info("Browser sessions closed")
    await browser_engine.shutdown()


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    connection = await ws_manager.connect(websocket)
    dispose = monitoring_service.log_connection(connection.id)
    health_monitor.register(connection)
    handler = MessageHandler(connection, session_registry, health_monitor)
    logger.info(f"Client connected: {connection.id}")

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            text = message.get("text")
            if text is not None:
                await handler.handle_text(text)
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # Raised when receiving after the server closed the socket
        logger.debug(f"Receive loop for {connection.id} ended: {e}")
    finally:
        logger.info(f"Client disconnected: {connection.id}")
        await handler.close()
        await ws_manager.disconnect(connection)
        dispose()


def run_server(
    host: Optional[str] = None,
    port: Optional[int] = None,
    ssl_certfile: Optional[str] = None,
    ssl_keyfile: Optional[str] = None,
):
    """
    Run the rendering server.

    Args:
        host: Bind address. Defaults to VIRTUAL_BROWSER_HOST or 127.0.0.1.
        port: Port to listen on. Defaults to VIRTUAL_BROWSER_PORT or 3000.
        ssl_certfile: Path to SSL certificate file (PEM format).
                      Defaults to settings.ssl_certfile (VIRTUAL_BROWSER_SSL_CERTFILE).
        ssl_keyfile: Path to SSL private key file (PEM format).
                     Defaults to settings.ssl_keyfile (VIRTUAL_BROWSER_SSL_KEYFILE).
    """
    import uvicorn

    host = host or settings.host
    port = port or settings.port

    certfile = ssl_certfile or settings.ssl_certfile
    keyfile = ssl_keyfile or settings.ssl_keyfile

    kwargs = {"host": host, "port": port}

    if certfile and keyfile:
        if not os.path.isfile(certfile):
            logger.error(f"SSL certificate file not found: {certfile}")
            return
        if not os.path.isfile(keyfile):
            logger.error(f"SSL key file not found: {keyfile}")
            return
        kwargs["ssl_certfile"] = certfile
        kwargs["ssl_keyfile"] = keyfile
        logger.info(f"HTTPS enabled with cert={certfile}")
    elif certfile or keyfile:
        logger.error("Both ssl_certfile and ssl_keyfile must be provided for HTTPS")
        return

    uvicorn.run(app, **kwargs)
