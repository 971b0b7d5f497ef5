# src/lorawan_as/apps/api/server.py
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lorawan_as.apps.api import as_rpc, join_server, operator
from lorawan_as.services.config import AppServerConfig, load_config
from lorawan_as.services.lorawan.context import ServerContext, build_context
from lorawan_as.services.lorawan.errors import LoRaWANError

__all__ = ["create_app", "create_join_server_app", "SWEEP_INTERVAL"]

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 30.0


async def _sweeper(ctx: ServerContext, interval: float) -> None:
    """Drop idle per-key locks and idle network-server clients."""

    while True:
        await asyncio.sleep(interval)
        dropped_devices = ctx.device_locks.sweep()
        dropped_groups = ctx.group_locks.sweep()
        closed_clients = await ctx.pool.sweep()
        if dropped_devices or dropped_groups or closed_clients:
            logger.debug(
                "sweep finished",
                extra={
                    "extra": {
                        "device_locks": dropped_devices,
                        "group_locks": dropped_groups,
                        "clients": closed_clients,
                    }
                },
            )


async def _lorawan_error(request: Request, exc: LoRaWANError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request failed", extra={"extra": {"path": request.url.path, "kind": exc.kind.value}})
    return JSONResponse(status_code=exc.status_code, content=exc.envelope.as_dict())


def _build_app(title: str, ctx: ServerContext | None, config: AppServerConfig | None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "ctx", None) is None
        if owned:
            app.state.ctx = build_context(config or load_config())
        sweeper = asyncio.create_task(_sweeper(app.state.ctx, SWEEP_INTERVAL), name="lorawan-as-sweeper")
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
            if owned:
                await app.state.ctx.aclose()
                app.state.ctx = None

    app = FastAPI(title=title, lifespan=lifespan)
    if ctx is not None:
        app.state.ctx = ctx
    app.add_exception_handler(LoRaWANError, _lorawan_error)

    @app.get("/health/live")
    async def health_live():
        return {"ok": True, "ts": time.time()}

    return app


def create_app(ctx: ServerContext | None = None, *, config: AppServerConfig | None = None) -> FastAPI:
    """Operator API plus the RPC surface called by the network-server."""

    app = _build_app("LoRaWAN Application Server", ctx, config)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS", "PUT", "DELETE"],
        allow_headers=["Content-Type", "X-LoRaWAN-Token", "Authorization"],
        allow_credentials=False,  # tokens travel in headers
    )
    app.include_router(as_rpc.router)
    app.include_router(operator.router)
    return app


def create_join_server_app(ctx: ServerContext | None = None, *, config: AppServerConfig | None = None) -> FastAPI:
    app = _build_app("LoRaWAN Join Server", ctx, config)
    app.include_router(join_server.router)
    return app
