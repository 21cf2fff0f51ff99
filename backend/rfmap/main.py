import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from . import auth
from .api import devices, maintenance, relationships, signals, ws
from .config import Settings
from .logging_config import bind_request, configure_logging, get_logger
from .metrics import REQUEST_ERRORS_TOTAL, REQUEST_LATENCY_MS, REQUESTS_TOTAL
from .runtime import build_runtime
from .spatial import QueryLimitError

configure_logging()
logger = get_logger("http")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = build_runtime(settings)
        app.state.runtime = runtime
        app.state.ws_manager = ws.ConnectionManager()
        listener = ws.bridge(runtime.notifier, app.state.ws_manager, asyncio.get_running_loop())
        runtime.start_maintenance()
        try:
            yield
        finally:
            runtime.notifier.unsubscribe(listener)
            await runtime.shutdown()

    app = FastAPI(title="RF Signal Map Backend", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(signals.router, prefix="/signals", tags=["signals"])
    app.include_router(devices.router, prefix="/devices", tags=["devices"])
    app.include_router(relationships.router, prefix="/relationships", tags=["relationships"])
    app.include_router(maintenance.router, prefix="/db", tags=["maintenance"])
    app.include_router(ws.router, tags=["ws"])

    @app.exception_handler(QueryLimitError)
    async def query_limit_handler(request: Request, exc: QueryLimitError):
        return JSONResponse(status_code=400, content={"detail": str(exc), "limit": exc.kind})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(SQLAlchemyError)
    async def storage_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("storage_error", path=request.url.path, error=type(exc).__name__)
        return JSONResponse(status_code=500, content={"detail": "storage error"})

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = req_id
        bind_request(req_id, method=request.method, path=request.url.path)
        auth_label = "token" if auth.API_TOKEN else "none"
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        response.headers["X-Request-ID"] = req_id

        # Route templates keep label cardinality bounded (/signals/{signal_id}, not every id).
        route = request.scope.get("route")
        path_label = getattr(route, "path", request.url.path)
        REQUESTS_TOTAL.labels(method=request.method, path=path_label, status=response.status_code, auth=auth_label).inc()
        REQUEST_LATENCY_MS.labels(method=request.method, path=path_label).observe(elapsed_ms)
        if response.status_code >= 400:
            REQUEST_ERRORS_TOTAL.labels(method=request.method, path=path_label, status=response.status_code).inc()

        logger.info(
            "http_request",
            path=request.url.path,
            method=request.method,
            status=response.status_code,
            request_id=req_id,
            latency_ms=round(elapsed_ms, 2),
            auth=auth_label,
        )
        return response

    @app.get("/health")
    def health(request: Request):
        return {"status": "ok", "mode": request.app.state.runtime.backend.name}

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus text metrics endpoint."""

        runtime = request.app.state.runtime
        await runtime.run(runtime.retention.get_stats)
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
