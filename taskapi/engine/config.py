"""
TaskAPI Configuration — Load and validate taskapi.yaml at startup.

Usage:
    from taskapi.engine.config import load_config, get_config

Environment overrides (applied after the file is read):
    TASKAPI_TOKEN_SECRET  → auth.token_secret
    TASKAPI_REDIS_URL     → stores.redis_url
    TASKAPI_ENVIRONMENT   → environment
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from taskapi.engine.errors import TaskAPIConfigError

CONFIG_FILENAME = "taskapi.yaml"

# Dev-only fallback; prod refuses to start with it.
_DEFAULT_TOKEN_SECRET = "taskapi-dev-secret-change-in-production"


# ---------------------------------------------------------------------------
# Pydantic models for taskapi.yaml
# ---------------------------------------------------------------------------

class StoresConfig(BaseModel):
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    tasks_namespace: str = "tasks"
    comments_namespace: str = "comments"
    rate_limit_namespace: str = "rate_limits"
    socket_timeout: float = 5.0

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError(f"stores.backend must be memory/redis, got '{v}'")
        return v


class AuthConfig(BaseModel):
    type: str = "jwt"
    token_secret: str = _DEFAULT_TOKEN_SECRET
    token_max_age: Optional[int] = None
    jwt_algorithm: str = "HS256"
    # name → bcrypt hash
    api_keys: Dict[str, str] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in ("jwt", "token", "api_key", "any"):
            raise ValueError(f"auth.type must be jwt/token/api_key/any, got '{v}'")
        return v

    @field_validator("jwt_algorithm")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        if v not in ("HS256", "HS384", "HS512"):
            raise ValueError(f"auth.jwt_algorithm must be HS256/HS384/HS512, got '{v}'")
        return v


class RateLimitConfig(BaseModel):
    enabled: bool = True
    requests: int = Field(default=100, ge=1)
    window: int = Field(default=60, ge=1)
    atomic_increment: bool = False
    client_ip_headers: List[str] = Field(
        default_factory=lambda: ["cf-connecting-ip", "x-forwarded-for"]
    )
    missing_ip_bucket: str = "unknown"


class CORSConfig(BaseModel):
    allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    allow_methods: List[str] = Field(
        default_factory=lambda: ["GET", "HEAD", "PUT", "POST", "DELETE", "PATCH"]
    )
    allow_headers: List[str] = Field(default_factory=list)
    expose_headers: List[str] = Field(default_factory=list)
    allow_credentials: bool = False
    max_age: Optional[int] = None


class CSRFConfig(BaseModel):
    enabled: bool = True
    allowed_origins: List[str] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_logging: bool = False
    directory: str = ".taskapi/logs"
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000


class ServiceConfig(BaseModel):
    """Root model for taskapi.yaml."""
    name: str = "TaskAPI"
    version: str = "1.0.0"
    environment: str = "dev"
    api_prefix: str = "/api/v1"

    stores: StoresConfig = StoresConfig()
    auth: AuthConfig = AuthConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    cors: CORSConfig = CORSConfig()
    csrf: CSRFConfig = CSRFConfig()
    logging: LoggingConfig = LoggingConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"api_prefix must start with '/', got '{v}'")
        return v.rstrip("/")


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_config: Optional[ServiceConfig] = None


def _find_config_file() -> Optional[Path]:
    """Walk up from CWD looking for taskapi.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        candidate = parent / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict) -> dict:
    secret = os.environ.get("TASKAPI_TOKEN_SECRET")
    if secret:
        data.setdefault("auth", {})["token_secret"] = secret
    redis_url = os.environ.get("TASKAPI_REDIS_URL")
    if redis_url:
        data.setdefault("stores", {})["redis_url"] = redis_url
    environment = os.environ.get("TASKAPI_ENVIRONMENT")
    if environment:
        data["environment"] = environment
    return data


def load_config(config_path: Optional[str] = None) -> ServiceConfig:
    """
    Load and validate taskapi.yaml.

    Args:
        config_path: Explicit path. If None, auto-discovers from CWD upwards.

    Returns:
        Validated ServiceConfig. Defaults when no file exists.

    Raises:
        TaskAPIConfigError: unreadable YAML, failed validation, or the dev
            token secret used in prod.
    """
    global _config

    path = Path(config_path) if config_path else _find_config_file()

    raw: dict = {}
    if path is not None and path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise TaskAPIConfigError(f"Invalid YAML in {path}: {e}", path=str(path))

    # Allow everything nested under a top-level "service:" key
    data = dict(raw.get("service", raw))
    data = _apply_env_overrides(data)

    try:
        config = ServiceConfig(**data)
    except ValidationError as e:
        raise TaskAPIConfigError(f"Invalid configuration: {e}", path=str(path))

    if config.environment == "prod" and config.auth.token_secret == _DEFAULT_TOKEN_SECRET:
        raise TaskAPIConfigError(
            "auth.token_secret must be set in prod (use TASKAPI_TOKEN_SECRET)",
            path=str(path),
        )

    _config = config
    return _config


def get_config() -> ServiceConfig:
    """Get the currently loaded config, loading if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    global _config
    _config = None
