"""FastAPI entrypoint: wires config, container, routes, error mapping and lifecycle hooks."""

from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_relay.api.http.health import router as health_router
from agent_relay.api.http.sessions import router as sessions_router
from agent_relay.api.stream.sse import router as sse_router
from agent_relay.api.stream.websocket import router as websocket_router
from agent_relay.core.config import Settings
from agent_relay.core.container import build_container
from agent_relay.core.errors import RelayError, Unauthorized
from agent_relay.core.lifecycle import on_shutdown, on_startup
from agent_relay.infra.engine.base import QueryEngine
from agent_relay.infra.observability.logger import get_logger, setup_logging

access_logger = get_logger("uvicorn.access")


def create_app(settings: Settings | None = None, *, query_engine: QueryEngine | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    container = build_container(settings, query_engine=query_engine)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await on_startup(container)
        try:
            yield
        finally:
            await on_shutdown(container)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(_: Request, exc: RelayError) -> JSONResponse:
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.to_detail()},
            headers=headers,
        )

    if settings.access_log_enabled:

        @app.middleware("http")
        async def access_log(request: Request, call_next):
            start = perf_counter()
            status_code = 500
            try:
                response = await call_next(request)
                status_code = response.status_code
                return response
            finally:
                duration_ms = (perf_counter() - start) * 1000
                query = f"?{request.url.query}" if request.url.query else ""
                client_ip = request.client.host if request.client else "-"
                access_logger.info(
                    '%s "%s %s%s" %s %.2fms',
                    client_ip,
                    request.method,
                    request.url.path,
                    query,
                    status_code,
                    duration_ms,
                )

    app.include_router(health_router)
    app.include_router(sessions_router)
    app.include_router(sse_router)
    app.include_router(websocket_router)

    return app


def run() -> None:
    """Console entry point: serve the relay with uvicorn using env settings."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


app = create_app()
