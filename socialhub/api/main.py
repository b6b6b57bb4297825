"""FastAPI application entrypoint for SocialHub."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from socialhub.auth.middleware import AUTH_CONTEXT_KEY, resolve_request_auth_context
from socialhub.content.router import router as posts_router
from socialhub.core.config import get_settings
from socialhub.core.logger import bind_request_context, clear_request_context, get_logger
from socialhub.core.metrics import record_http_request, render_prometheus_metrics
from socialhub.core.observability import init_sentry, sentry_scope
from socialhub.credentials.router import router as credentials_router
from socialhub.oauth.router import router as oauth_router
from socialhub.storage.db import load_models
from socialhub.storage.db import test_connection as test_db_connection
from socialhub.storage.redis_client import test_connection as test_redis_connection
from socialhub.webhooks.router import router as webhooks_router


settings = get_settings()
logger = get_logger("socialhub.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    auth_context = resolve_request_auth_context(request)
    setattr(request.state, AUTH_CONTEXT_KEY, auth_context)

    workspace_id = auth_context.workspace_id if auth_context is not None else None
    bind_request_context(request_id=request_id, workspace_id=workspace_id)

    status_code = 500
    try:
        with sentry_scope(workspace_id=workspace_id, request_id=request_id):
            response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=perf_counter() - started_at,
            )
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    sentry_enabled = init_sentry()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
    )


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = test_db_connection()
    redis_ok, redis_error = test_redis_connection()

    healthy = db_ok and redis_ok
    payload = {
        "status": "ok" if healthy else "degraded",
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
        },
    }
    return JSONResponse(content=payload, status_code=200 if healthy else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(payload, media_type="text/plain; version=0.0.4; charset=utf-8")


app.include_router(oauth_router)
app.include_router(credentials_router)
app.include_router(webhooks_router)
app.include_router(posts_router)
