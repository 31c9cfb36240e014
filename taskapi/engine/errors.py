"""
TaskAPI Error Hierarchy — Structured exceptions mapped to HTTP responses.

Every error carries the HTTP status it maps to and a public ``error`` message
that is safe to echo to callers. Internal context (keys, store names, causes)
is kept in ``context`` for logging only.

Hierarchy:
    TaskAPIError
    ├── TaskAPIValidationError  — 400, body or query failed schema
    ├── TaskAPIAuthError        — 401, missing/invalid credential
    ├── TaskAPICsrfError        — 403, failed origin check
    ├── TaskAPINotFoundError    — 404, task/comment absent
    ├── TaskAPIRateLimitError   — 429, bucket exhausted
    ├── TaskAPIStoreError       — 500, key-value store call failed
    └── TaskAPIConfigError      — invalid taskapi.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class TaskAPIError(Exception):
    """
    Base error for all TaskAPI failures.
    Anything not covered by a subclass surfaces as a generic 500.
    """

    status_code: int = 500
    public_message: str = "Internal Server Error"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def response_body(self) -> Dict[str, Any]:
        """JSON body returned to the caller. Never includes internal context."""
        return {"error": self.public_message}

    def response_headers(self) -> Dict[str, str]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for structured logs."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "status_code": self.status_code,
            "timestamp": self.timestamp,
            "context": {k: str(v) for k, v in self.context.items()},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        return f"{self.error_type}({self.status_code}): {self.message}"


class TaskAPIValidationError(TaskAPIError):
    """
    Request body or query failed validation.
    ``issues`` holds one dict per violation: path, code, expected, message.
    """

    status_code = 400
    public_message = "Validation failed"

    def __init__(self, message: str, **context: Any):
        self.issues: List[Dict[str, Any]] = context.pop("issues", None) or []
        super().__init__(message, **context)

    def response_body(self) -> Dict[str, Any]:
        return {"error": self.public_message, "issues": self.issues}

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["issues"] = self.issues
        return d


class TaskAPIAuthError(TaskAPIError):
    """Missing or rejected bearer credential."""

    status_code = 401
    public_message = "Unauthorized"


class TaskAPICsrfError(TaskAPIError):
    """State-changing request failed the origin check."""

    status_code = 403
    public_message = "Forbidden"

    def __init__(self, message: str, **context: Any):
        self.origin: Optional[str] = context.get("origin")
        super().__init__(message, **context)


class TaskAPINotFoundError(TaskAPIError):
    """Referenced task or comment does not exist."""

    status_code = 404

    def __init__(self, message: str, **context: Any):
        self.resource: str = context.get("resource", "Resource")
        self.resource_id: Optional[str] = context.get("resource_id")
        super().__init__(message, **context)

    @property
    def public_message(self) -> str:  # type: ignore[override]
        return f"{self.resource} not found"


class TaskAPIRateLimitError(TaskAPIError):
    """Client IP exhausted its request bucket."""

    status_code = 429
    public_message = "Too many requests"

    def __init__(self, message: str, **context: Any):
        self.retry_after: int = int(context.get("retry_after", 60))
        self.client_ip: Optional[str] = context.get("client_ip")
        super().__init__(message, **context)

    def response_body(self) -> Dict[str, Any]:
        return {"error": self.public_message, "retry_after": self.retry_after}

    def response_headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class TaskAPIStoreError(TaskAPIError):
    """Key-value store call failed (connection, timeout, corrupt value)."""

    def __init__(self, message: str, **context: Any):
        self.namespace: Optional[str] = context.get("namespace")
        self.operation: Optional[str] = context.get("operation")
        self.key: Optional[str] = context.get("key")
        super().__init__(message, **context)


class TaskAPIConfigError(TaskAPIError):
    """Configuration error — invalid taskapi.yaml or missing secret."""
    pass
