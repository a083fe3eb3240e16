"""
Health and metrics endpoint.

Small FastAPI application served by uvicorn on METRICS_ADDR:
    /healthz  process is alive
    /readyz   controllers are running (and leading, when elected)
    /metrics  reconcile counters and per-pool capacity as JSON

The listening socket is bound before the manager starts, so an address that
cannot be bound fails startup instead of surfacing later.
"""

from __future__ import annotations

import socket
from typing import TYPE_CHECKING

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from staticip.models.enums import LogLevel
from staticip.utils.logger import get_logger

if TYPE_CHECKING:
    from staticip.manager import ControllerManager

logger = get_logger(__name__)


def create_app(manager: ControllerManager) -> FastAPI:
    """Build the FastAPI app bound to a manager."""
    app = FastAPI(
        title="staticip-controller",
        description="Static IP controller health and metrics",
        docs_url=None,
        redoc_url=None,
    )

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        if manager.is_ready():
            return {"status": "ready"}
        return JSONResponse(status_code=503, content={"status": "not ready"})

    @app.get("/metrics")
    async def metrics():
        return await manager.get_stats()

    return app


def bind_socket(host: str, port: int) -> socket.socket:
    """
    Bind the listening socket.

    Raises:
        OSError: The address cannot be bound.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def create_server(app: FastAPI, log_level: LogLevel) -> uvicorn.Server:
    """uvicorn server that leaves logging to loguru."""
    # Map log levels to uvicorn levels
    uvicorn_level_map = {
        LogLevel.FULL: "debug",
        LogLevel.DEBUG: "debug",
        LogLevel.INFO: "info",
        LogLevel.WARNING: "warning",
    }
    server_config = uvicorn.Config(
        app,
        log_level=uvicorn_level_map.get(log_level, "info"),
        log_config=None,  # Disable uvicorn's default logging config (use loguru)
        access_log=False,
    )
    return uvicorn.Server(server_config)
