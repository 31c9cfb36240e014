"""
TaskAPI Request Pipeline — ordered interceptors in front of the route handlers.

Pipeline (per request, strictly in this order):
    1. CORS         — every path; answers preflight, decorates every response
    2. Auth         — API prefix; bearer token / API key → CredentialVerifier
    3. CSRF         — API prefix; origin check for form-submittable writes
    4. Rate limit   — API prefix; per-client-IP bucket
    5. Route        — FastAPI validation + handler

An interceptor's ``before`` returns None to continue or a Response to stop
the chain; raising a TaskAPIError stops it with that error's response.
``after`` runs in reverse order for every interceptor that was entered,
whether the chain completed or not.

Registered on the FastAPI app as a single HTTP middleware, so this runner is
also the outermost error boundary: anything unhandled becomes a generic 500.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable, List, Optional

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from taskapi.api.rate_limit import RateLimiter, resolve_client_ip
from taskapi.engine.errors import (
    TaskAPIAuthError,
    TaskAPICsrfError,
    TaskAPIError,
    TaskAPIRateLimitError,
)
from taskapi.engine.logging import audit, rejection_record, request_record
from taskapi.engine.security import CredentialVerifier

logger = logging.getLogger("taskapi.api.pipeline")

CallNext = Callable[[Request], Awaitable[Response]]

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
FORM_CONTENT_TYPES = frozenset({
    "application/x-www-form-urlencoded",
    "multipart/form-data",
    "text/plain",
})


def error_response(exc: TaskAPIError) -> JSONResponse:
    """Render a TaskAPIError as its public JSON response."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.response_body(),
        headers=exc.response_headers(),
    )


def _request_origin(request: Request) -> str:
    return f"{request.url.scheme}://{request.url.netloc}"


def _add_vary(response: Response, value: str) -> None:
    existing = [v.strip() for v in response.headers.get("Vary", "").split(",") if v.strip()]
    if value.lower() not in (v.lower() for v in existing):
        existing.append(value)
    response.headers["Vary"] = ", ".join(existing)


# ---------------------------------------------------------------------------
# Interceptors
# ---------------------------------------------------------------------------

class Interceptor:
    """Base interceptor. ``path_prefix=None`` means every path."""

    name = "interceptor"

    def __init__(self, path_prefix: Optional[str] = None):
        self.path_prefix = path_prefix

    def applies_to(self, request: Request) -> bool:
        if self.path_prefix is None:
            return True
        path = request.url.path
        return path == self.path_prefix or path.startswith(self.path_prefix + "/")

    async def before(self, request: Request) -> Optional[Response]:
        return None

    def after(self, request: Request, response: Response) -> None:
        return None


class CORSInterceptor(Interceptor):
    """
    Permissive cross-origin headers. Never blocks a request.

    OPTIONS requests are answered here with 204, before auth runs.
    """

    name = "cors"

    def __init__(
        self,
        allow_origins: Optional[List[str]] = None,
        allow_methods: Optional[List[str]] = None,
        allow_headers: Optional[List[str]] = None,
        expose_headers: Optional[List[str]] = None,
        allow_credentials: bool = False,
        max_age: Optional[int] = None,
    ):
        super().__init__(path_prefix=None)
        self._allow_origins = allow_origins or ["*"]
        self._allow_methods = allow_methods or ["GET", "HEAD", "PUT", "POST", "DELETE", "PATCH"]
        self._allow_headers = allow_headers or []
        self._expose_headers = expose_headers or []
        self._allow_credentials = allow_credentials
        self._max_age = max_age

    def _allowed_origin(self, request: Request) -> Optional[str]:
        origin = request.headers.get("origin")
        if "*" in self._allow_origins:
            # Credentials cannot be combined with a literal "*"
            if self._allow_credentials and origin:
                return origin
            return "*"
        if origin and origin in self._allow_origins:
            return origin
        return None

    def _apply_origin_headers(self, request: Request, response: Response) -> None:
        allowed = self._allowed_origin(request)
        if allowed is not None:
            response.headers["Access-Control-Allow-Origin"] = allowed
        if allowed != "*":
            _add_vary(response, "Origin")
        if self._allow_credentials:
            response.headers["Access-Control-Allow-Credentials"] = "true"

    async def before(self, request: Request) -> Optional[Response]:
        if request.method != "OPTIONS":
            return None

        response = Response(status_code=204)
        response.headers["Access-Control-Allow-Methods"] = ",".join(self._allow_methods)
        if self._allow_headers:
            response.headers["Access-Control-Allow-Headers"] = ",".join(self._allow_headers)
        else:
            requested = request.headers.get("access-control-request-headers")
            if requested:
                response.headers["Access-Control-Allow-Headers"] = requested
                response.headers["Vary"] = "Access-Control-Request-Headers"
        if self._max_age is not None:
            response.headers["Access-Control-Max-Age"] = str(self._max_age)
        return response

    def after(self, request: Request, response: Response) -> None:
        self._apply_origin_headers(request, response)
        if self._expose_headers:
            response.headers["Access-Control-Expose-Headers"] = ",".join(self._expose_headers)


class AuthInterceptor(Interceptor):
    """
    Requires a credential accepted by the verifier.

    Accepted locations: ``Authorization: Bearer <token>`` or ``X-API-Key``.
    Nothing about the caller is passed on to handlers.
    """

    name = "auth"

    def __init__(self, verifier: CredentialVerifier, path_prefix: str):
        super().__init__(path_prefix)
        self._verifier = verifier

    @staticmethod
    def extract_credential(request: Request) -> Optional[str]:
        authorization = request.headers.get("authorization", "")
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
        api_key = request.headers.get("x-api-key", "").strip()
        return api_key or None

    async def before(self, request: Request) -> Optional[Response]:
        credential = self.extract_credential(request)
        if credential is None:
            raise TaskAPIAuthError("Missing bearer credential")

        # bcrypt checks are slow; keep them off the event loop
        result = await run_in_threadpool(self._verifier.verify, credential)
        if not result.valid:
            raise TaskAPIAuthError(f"Credential rejected: {result.reason}", reason=result.reason)
        return None


class CSRFInterceptor(Interceptor):
    """
    Origin check for writes a browser could forge with a plain form.

    Only unsafe methods whose content type is form-submittable are checked;
    a missing content type counts as text/plain when a body is present. The
    Origin header must equal the request's own origin or an allowed origin.
    """

    name = "csrf"

    def __init__(self, path_prefix: str, allowed_origins: Optional[List[str]] = None):
        super().__init__(path_prefix)
        self._allowed_origins = set(allowed_origins or [])

    @staticmethod
    def _is_form_submittable(request: Request) -> bool:
        content_type = request.headers.get("content-type")
        if content_type is None:
            length = request.headers.get("content-length", "0")
            has_body = length != "0" or "transfer-encoding" in request.headers
            return has_body
        return content_type.split(";")[0].strip().lower() in FORM_CONTENT_TYPES

    def origin_allowed(self, origin: Optional[str], request: Request) -> bool:
        if not origin:
            return False
        return origin == _request_origin(request) or origin in self._allowed_origins

    async def before(self, request: Request) -> Optional[Response]:
        if request.method in SAFE_METHODS or not self._is_form_submittable(request):
            return None
        origin = request.headers.get("origin")
        if not self.origin_allowed(origin, request):
            raise TaskAPICsrfError(f"Cross-site form request from origin {origin!r}", origin=origin)
        return None


class RateLimitInterceptor(Interceptor):
    """Per-IP request cap; adds X-RateLimit-* headers to counted responses."""

    name = "rate_limit"

    def __init__(self, limiter: RateLimiter, path_prefix: str, client_ip_headers: List[str]):
        super().__init__(path_prefix)
        self._limiter = limiter
        self._client_ip_headers = client_ip_headers

    async def before(self, request: Request) -> Optional[Response]:
        client_ip = resolve_client_ip(request, self._client_ip_headers)
        decision = await self._limiter.check(client_ip)
        request.state.rate_limit = decision
        if not decision.allowed:
            raise TaskAPIRateLimitError(
                f"Rate limit exceeded for {client_ip or 'unknown client'}",
                retry_after=decision.retry_after,
                client_ip=client_ip,
            )
        return None

    def after(self, request: Request, response: Response) -> None:
        decision = getattr(request.state, "rate_limit", None)
        if decision is None:
            return
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)


# ---------------------------------------------------------------------------
# Chain runner
# ---------------------------------------------------------------------------

class RequestPipeline:
    """
    Runs interceptors in order, then the route, then ``after`` hooks in reverse.

    Usage:
        pipeline = RequestPipeline([cors, auth, csrf, rate_limit])
        app.middleware("http")(pipeline)
    """

    def __init__(self, interceptors: List[Interceptor]):
        self._interceptors = list(interceptors)

    @property
    def interceptors(self) -> List[Interceptor]:
        return list(self._interceptors)

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        request_id = uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        start_time = time.monotonic()
        entered: List[Interceptor] = []
        rejected_by: Optional[str] = None

        try:
            response: Optional[Response] = None
            for interceptor in self._interceptors:
                if not interceptor.applies_to(request):
                    continue
                entered.append(interceptor)
                try:
                    response = await interceptor.before(request)
                except TaskAPIError as e:
                    if e.status_code >= 500:
                        raise
                    self._log_rejection(interceptor, request, e)
                    response = error_response(e)
                if response is not None:
                    rejected_by = interceptor.name
                    break

            if response is None:
                response = await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}: {e}")
            response = error_response(TaskAPIError(str(e)))

        for interceptor in reversed(entered):
            interceptor.after(request, response)

        response.headers["X-Request-ID"] = request_id
        duration_ms = (time.monotonic() - start_time) * 1000
        audit(request_record(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            client_ip=request.client.host if request.client else None,
            rejected_by=rejected_by if response.status_code >= 400 else None,
        ))
        return response

    @staticmethod
    def _log_rejection(interceptor: Interceptor, request: Request, exc: TaskAPIError) -> None:
        logger.warning(
            f"{interceptor.name} rejected {request.method} {request.url.path}: {exc.message}"
        )
        audit(rejection_record(
            interceptor.name,
            request_id=request.state.request_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
            reason=exc.message,
        ))
