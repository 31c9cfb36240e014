"""
Comment routes — comments live in their own store under ``{taskId}:{commentId}``.

The parent task is only checked when a comment is created. Deleting a task
leaves its comments addressable.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from taskapi.api.dependencies import get_comment_store, get_task_store
from taskapi.api.schemas import CommentCreate, CommentUpdate, provided_fields
from taskapi.engine.errors import TaskAPINotFoundError
from taskapi.engine.store import KeyValueStore
from taskapi.utilities.utils import base_url, new_id, next_timestamp, now_ms, strip_suffix

logger = logging.getLogger("taskapi.api.comments")

router = APIRouter(prefix="/tasks/{task_id}/comments", tags=["comments"])


def comment_key(task_id: str, comment_id: str) -> str:
    return f"{task_id}:{comment_id}"


def _with_links(comment: Dict[str, Any], self_url: str, task_url: str) -> Dict[str, Any]:
    return {**comment, "links": {"self": self_url, "task": task_url}}


@router.post("", status_code=201)
async def create_comment(
    task_id: str,
    body: CommentCreate,
    request: Request,
    tasks: KeyValueStore = Depends(get_task_store),
    comments: KeyValueStore = Depends(get_comment_store),
):
    if await tasks.get(task_id) is None:
        raise TaskAPINotFoundError(f"Task {task_id} not found", resource="Task", resource_id=task_id)

    timestamp = now_ms()
    comment = {
        "id": new_id(),
        "taskId": task_id,
        "content": body.content,
        "createdAt": timestamp,
        "updatedAt": timestamp,
    }
    await comments.put_json(comment_key(task_id, comment["id"]), comment)
    logger.info(f"Created comment {comment['id']} on task {task_id}")

    url = base_url(request.url)
    return _with_links(comment, f"{url}/{comment['id']}", strip_suffix(url, "/comments"))


@router.get("")
async def list_comments(
    task_id: str,
    request: Request,
    comments: KeyValueStore = Depends(get_comment_store),
):
    """
    All comments of a task in one response.

    No pagination: the prefix scan is drained in full, so very chatty tasks
    produce large responses.
    """
    keys = []
    cursor = None
    while True:
        listing = await comments.list(prefix=f"{task_id}:", cursor=cursor)
        keys.extend(listing.keys)
        if listing.list_complete:
            break
        cursor = listing.cursor

    records = await asyncio.gather(*(comments.get_json(key) for key in keys))

    url = base_url(request.url)
    task_url = strip_suffix(url, "/comments")
    items = [
        _with_links(record, f"{url}/{record['id']}", task_url)
        for record in records
        if record is not None
    ]
    return {
        "comments": items,
        "metadata": {"total": len(items)},
        "links": {"self": str(request.url), "task": task_url},
    }


@router.put("/{comment_id}")
async def update_comment(
    task_id: str,
    comment_id: str,
    body: CommentUpdate,
    request: Request,
    comments: KeyValueStore = Depends(get_comment_store),
):
    key = comment_key(task_id, comment_id)
    existing = await comments.get_json(key)
    if existing is None:
        raise TaskAPINotFoundError(
            f"Comment {key} not found", resource="Comment", resource_id=comment_id
        )
    existing.pop("links", None)

    comment = {
        **existing,
        **provided_fields(body),
        "updatedAt": next_timestamp(existing.get("updatedAt", 0)),
    }
    await comments.put_json(key, comment)

    url = base_url(request.url)
    return _with_links(comment, url, strip_suffix(url, f"/comments/{comment_id}"))


@router.delete("/{comment_id}")
async def delete_comment(
    task_id: str,
    comment_id: str,
    comments: KeyValueStore = Depends(get_comment_store),
):
    """Idempotent."""
    await comments.delete(comment_key(task_id, comment_id))
    logger.info(f"Deleted comment {comment_id} on task {task_id}")
    return {"message": "Comment deleted successfully"}
