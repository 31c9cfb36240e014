"""FastAPI dependency providers — read shared store handles from app.state."""

from __future__ import annotations

from fastapi import Request

from taskapi.engine.store import KeyValueStore


def get_task_store(request: Request) -> KeyValueStore:
    return request.app.state.task_store


def get_comment_store(request: Request) -> KeyValueStore:
    return request.app.state.comment_store
