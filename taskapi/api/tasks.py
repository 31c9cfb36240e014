"""
Task routes — CRUD over the task store.

Records are stored as JSON under the bare task id. ``links`` are computed
from the request URL on every response and never persisted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request

from taskapi.api.dependencies import get_task_store
from taskapi.api.schemas import TaskCreate, TaskUpdate, provided_fields
from taskapi.engine.errors import TaskAPINotFoundError
from taskapi.engine.store import DEFAULT_LIST_LIMIT, KeyValueStore
from taskapi.utilities.utils import base_url, new_id, next_timestamp, now_ms

logger = logging.getLogger("taskapi.api.tasks")

router = APIRouter(prefix="/tasks", tags=["tasks"])

MAX_PAGE = 1_000_000
MAX_LIMIT = DEFAULT_LIST_LIMIT


def _with_links(task: Dict[str, Any], self_url: str) -> Dict[str, Any]:
    return {
        **task,
        "links": {
            "self": self_url,
            "comments": f"{self_url}/comments",
        },
    }


async def _load_task(store: KeyValueStore, task_id: str) -> Dict[str, Any]:
    task = await store.get_json(task_id)
    if task is None:
        raise TaskAPINotFoundError(f"Task {task_id} not found", resource="Task", resource_id=task_id)
    task.pop("links", None)
    return task


@router.post("", status_code=201)
async def create_task(
    body: TaskCreate,
    request: Request,
    store: KeyValueStore = Depends(get_task_store),
):
    """Create a task. Defaults: status=todo, priority=medium, labels=[]."""
    timestamp = now_ms()
    task = {
        "id": new_id(),
        **body.model_dump(mode="json"),
        "createdAt": timestamp,
        "updatedAt": timestamp,
    }
    await store.put_json(task["id"], task)
    logger.info(f"Created task {task['id']}")
    return _with_links(task, f"{base_url(request.url)}/{task['id']}")


@router.get("")
async def list_tasks(
    request: Request,
    page: int = Query(default=1, ge=1, le=MAX_PAGE),
    limit: int = Query(default=10, ge=1, le=MAX_LIMIT),
    status: Optional[str] = None,
    priority: Optional[str] = None,
    store: KeyValueStore = Depends(get_task_store),
):
    """
    One page of tasks, optionally filtered by status and/or priority.

    Filters are applied after the page of keys is fetched, so a page can
    hold fewer than ``limit`` matches even when more exist further on, and
    ``metadata.total`` counts matches on this page only.
    """
    offset = (page - 1) * limit
    listing = await store.list(cursor=str(offset) if offset > 0 else None, limit=limit)
    records = await asyncio.gather(*(store.get_json(key) for key in listing.keys))

    base = base_url(request.url)
    tasks: List[Dict[str, Any]] = []
    for record in records:
        # Listed but already deleted (eventual consistency)
        if record is None:
            continue
        if status and record.get("status") != status:
            continue
        if priority and record.get("priority") != priority:
            continue
        record.pop("links", None)
        tasks.append(_with_links(record, f"{base}/{record['id']}"))

    return {
        "tasks": tasks,
        "metadata": {
            "total": len(tasks),
            "page": page,
            "limit": limit,
        },
        "links": {
            "self": str(request.url),
            # Total page count is unknown, so next is never capped
            "next": str(request.url.include_query_params(page=page + 1, limit=limit)),
            "prev": (
                str(request.url.include_query_params(page=page - 1, limit=limit))
                if page > 1 else None
            ),
        },
    }


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    request: Request,
    store: KeyValueStore = Depends(get_task_store),
):
    task = await _load_task(store, task_id)
    return _with_links(task, base_url(request.url))


@router.put("/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    request: Request,
    store: KeyValueStore = Depends(get_task_store),
):
    """
    Partial update: provided fields overwrite, the rest keep their values.
    Read-then-write with no version check; a concurrent update can be lost.
    """
    existing = await _load_task(store, task_id)
    changes = provided_fields(body)
    task = {
        **existing,
        **changes,
        "updatedAt": next_timestamp(existing.get("updatedAt", 0)),
    }
    await store.put_json(task_id, task)
    logger.info(f"Updated task {task_id} ({', '.join(sorted(changes)) or 'no fields'})")
    return _with_links(task, base_url(request.url))


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    store: KeyValueStore = Depends(get_task_store),
):
    """Idempotent. Comments of the task are left in place."""
    await store.delete(task_id)
    logger.info(f"Deleted task {task_id}")
    return {"message": "Task deleted successfully"}
