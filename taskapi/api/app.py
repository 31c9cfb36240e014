"""
TaskAPI Application — assembles stores, verifier, pipeline and routes.

Run:
    taskapi serve --config taskapi.yaml

Or:
    uvicorn taskapi.api.app:create_app --factory --port 8787

Stores and the credential verifier are injectable so tests (and embedding
services) can pass in-memory fakes.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskapi import __version__
from taskapi.api import comments, tasks
from taskapi.api.pipeline import (
    AuthInterceptor,
    CORSInterceptor,
    CSRFInterceptor,
    RateLimitInterceptor,
    RequestPipeline,
    error_response,
)
from taskapi.api.rate_limit import RateLimiter
from taskapi.api.schemas import validation_error
from taskapi.engine.config import ServiceConfig, get_config
from taskapi.engine.errors import TaskAPIError
from taskapi.engine.logging import audit, lifecycle_record, start_audit_log, stop_audit_log
from taskapi.engine.security import CredentialVerifier, build_verifier
from taskapi.engine.store import KeyValueStore, create_store

logger = logging.getLogger("taskapi.api.app")


def build_pipeline(
    config: ServiceConfig,
    verifier: CredentialVerifier,
    rate_limit_store: KeyValueStore,
) -> RequestPipeline:
    """CORS → auth → CSRF → rate limit, the last three only under the API prefix."""
    prefix = config.api_prefix
    interceptors = [
        CORSInterceptor(
            allow_origins=config.cors.allow_origins,
            allow_methods=config.cors.allow_methods,
            allow_headers=config.cors.allow_headers,
            expose_headers=config.cors.expose_headers,
            allow_credentials=config.cors.allow_credentials,
            max_age=config.cors.max_age,
        ),
        AuthInterceptor(verifier, path_prefix=prefix),
    ]
    if config.csrf.enabled:
        interceptors.append(CSRFInterceptor(prefix, allowed_origins=config.csrf.allowed_origins))
    if config.rate_limit.enabled:
        limiter = RateLimiter(
            rate_limit_store,
            max_requests=config.rate_limit.requests,
            window_seconds=config.rate_limit.window,
            atomic=config.rate_limit.atomic_increment,
            missing_ip_bucket=config.rate_limit.missing_ip_bucket,
        )
        interceptors.append(
            RateLimitInterceptor(limiter, prefix, config.rate_limit.client_ip_headers)
        )
    return RequestPipeline(interceptors)


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(TaskAPIError)
    async def handle_taskapi_error(request: Request, exc: TaskAPIError):
        if exc.status_code >= 500:
            logger.error(f"{exc.error_type} on {request.method} {request.url.path}: {exc.to_json()}")
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(validation_error(exc.errors()))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )


def create_app(
    config: Optional[ServiceConfig] = None,
    task_store: Optional[KeyValueStore] = None,
    comment_store: Optional[KeyValueStore] = None,
    rate_limit_store: Optional[KeyValueStore] = None,
    verifier: Optional[CredentialVerifier] = None,
) -> FastAPI:
    """
    Build the TaskAPI FastAPI application.

    Args:
        config: Service config. Loaded from taskapi.yaml if None.
        task_store / comment_store / rate_limit_store: Store adapters.
            Built from ``config.stores`` when not given.
        verifier: Credential verifier. Built from ``config.auth`` if None.
    """
    # Stores define __len__, so test for None rather than truthiness
    if config is None:
        config = get_config()
    if task_store is None:
        task_store = create_store(config.stores, config.stores.tasks_namespace)
    if comment_store is None:
        comment_store = create_store(config.stores, config.stores.comments_namespace)
    if rate_limit_store is None:
        rate_limit_store = create_store(config.stores, config.stores.rate_limit_namespace)
    if verifier is None:
        verifier = build_verifier(config.auth)
    stores = {
        "tasks": task_store,
        "comments": comment_store,
        "rate_limits": rate_limit_store,
    }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.logging.file_logging:
            start_audit_log(
                config.logging.directory,
                flush_interval_ms=config.logging.flush_interval_ms,
                batch_size=config.logging.flush_batch_size,
                capacity=config.logging.max_queue_size,
            )
        audit(lifecycle_record(
            "startup",
            environment=config.environment,
            backend=config.stores.backend,
            api_prefix=config.api_prefix,
        ))
        logger.info(f"{config.name} {config.version} started ({config.environment}, {config.stores.backend} stores)")
        try:
            yield
        finally:
            for store in stores.values():
                await store.close()
            audit(lifecycle_record("shutdown"))
            stop_audit_log()
            logger.info(f"{config.name} stopped")

    app = FastAPI(
        title=config.name,
        description="Tasks and comments over a key-value store",
        version=config.version,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.task_store = task_store
    app.state.comment_store = comment_store
    app.state.rate_limit_store = rate_limit_store
    app.state.started_at = datetime.now(timezone.utc)

    _register_exception_handlers(app)
    app.include_router(tasks.router, prefix=config.api_prefix)
    app.include_router(comments.router, prefix=config.api_prefix)

    @app.get("/health")
    async def health_check():
        """Public health check — outside the API prefix, no auth."""
        store_status = {name: await store.ping() for name, store in stores.items()}
        healthy = all(store_status.values())
        uptime = (datetime.now(timezone.utc) - app.state.started_at).total_seconds()
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "version": __version__,
                "uptime_seconds": round(uptime, 2),
                "stores": {name: "ok" if ok else "unreachable" for name, ok in store_status.items()},
            },
        )

    app.middleware("http")(build_pipeline(config, verifier, rate_limit_store))
    return app
