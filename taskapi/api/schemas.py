"""Request schemas and validation-issue formatting."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticCustomError

from taskapi.engine.errors import TaskAPIValidationError

TITLE_MAX_LENGTH = 100
CONTENT_MAX_LENGTH = 500


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class _Body(BaseModel):
    """Inbound bodies reject unknown fields."""

    model_config = ConfigDict(extra="forbid")


class _PartialBody(_Body):
    """Every field optional, but a field that is sent must not be null."""

    @field_validator("*", mode="before")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        if v is None:
            raise PydanticCustomError("null_not_allowed", "Field may be omitted but not null")
        return v


class TaskCreate(_Body):
    title: str = Field(min_length=1, max_length=TITLE_MAX_LENGTH)
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    labels: List[str] = Field(default_factory=list)


class TaskUpdate(_PartialBody):
    title: Optional[str] = Field(default=None, min_length=1, max_length=TITLE_MAX_LENGTH)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    labels: Optional[List[str]] = None


class CommentCreate(_Body):
    content: str = Field(min_length=1, max_length=CONTENT_MAX_LENGTH)


class CommentUpdate(_PartialBody):
    content: Optional[str] = Field(default=None, min_length=1, max_length=CONTENT_MAX_LENGTH)


def provided_fields(body: BaseModel) -> Dict[str, Any]:
    """Fields the client actually sent, JSON-ready (enums as their values)."""
    return body.model_dump(mode="json", exclude_unset=True)


# ---------------------------------------------------------------------------
# Issue formatting
# ---------------------------------------------------------------------------

_REQUEST_LOCATIONS = ("body", "query", "path")

_EXPECTED_BY_TYPE = {
    "missing": "value",
    "string_type": "string",
    "list_type": "array",
    "int_type": "integer",
    "int_parsing": "integer",
    "dict_type": "object",
    "model_type": "object",
    "model_attributes_type": "object",
    "extra_forbidden": "no additional fields",
    "json_invalid": "valid JSON",
    "null_not_allowed": "non-null value",
}


def _expected(err: Dict[str, Any]) -> Optional[str]:
    ctx = err.get("ctx") or {}
    if "expected" in ctx:
        return str(ctx["expected"])
    if "min_length" in ctx:
        return f"length >= {ctx['min_length']}"
    if "max_length" in ctx:
        return f"length <= {ctx['max_length']}"
    if "ge" in ctx:
        return f">= {ctx['ge']}"
    if "gt" in ctx:
        return f"> {ctx['gt']}"
    return _EXPECTED_BY_TYPE.get(err.get("type", ""))


def format_issues(errors: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Convert pydantic/FastAPI error dicts into public issue objects:
        {"path": [...], "code": ..., "expected": ..., "message": ...}

    The request location ("body", "query", "path") is dropped from the path,
    so a bad title reports ``["title"]``.
    """
    issues: List[Dict[str, Any]] = []
    for err in errors:
        loc = list(err.get("loc") or ())
        if loc and loc[0] in _REQUEST_LOCATIONS:
            loc = loc[1:]
        issues.append({
            "path": loc,
            "code": err.get("type", "invalid"),
            "expected": _expected(err),
            "message": err.get("msg", "Invalid value"),
        })
    return issues


def validation_error(errors: Iterable[Dict[str, Any]]) -> TaskAPIValidationError:
    issues = format_issues(errors)
    summary = "; ".join(
        f"{'.'.join(str(p) for p in i['path']) or '<root>'}: {i['message']}" for i in issues
    )
    return TaskAPIValidationError(f"Validation failed: {summary}", issues=issues)
