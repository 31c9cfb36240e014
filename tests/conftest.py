"""
TaskAPI Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v
"""

from __future__ import annotations

from typing import Dict

import pytest

from taskapi.engine.config import ServiceConfig
from taskapi.engine.security import SignedTokenVerifier
from taskapi.engine.store import InMemoryKVStore

TEST_SECRET = "test-secret-key-for-unit-tests-only"


class FakeClock:
    """Monotonic clock the tests can move forward."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Isolation — never pick up a real taskapi.yaml or a running log queue
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch):
    """Reset module singletons and config env vars between tests."""
    import taskapi.engine.config as cfg_mod
    import taskapi.engine.logging as audit_mod

    for var in ("TASKAPI_TOKEN_SECRET", "TASKAPI_REDIS_URL", "TASKAPI_ENVIRONMENT"):
        monkeypatch.delenv(var, raising=False)
    cfg_mod._config = None
    audit_mod._shipper = None
    yield
    audit_mod.stop_audit_log()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stores(clock) -> Dict[str, InMemoryKVStore]:
    return {
        "tasks": InMemoryKVStore("tasks", clock=clock),
        "comments": InMemoryKVStore("comments", clock=clock),
        "rate_limits": InMemoryKVStore("rate_limits", clock=clock),
    }


@pytest.fixture
def config() -> ServiceConfig:
    return ServiceConfig(auth={"token_secret": TEST_SECRET})


@pytest.fixture
def verifier() -> SignedTokenVerifier:
    return SignedTokenVerifier(TEST_SECRET)


@pytest.fixture
def auth_headers(verifier) -> Dict[str, str]:
    return {"Authorization": f"Bearer {verifier.issue_token({'sub': 'test-runner'})}"}


@pytest.fixture
def app(config, stores, verifier):
    from taskapi.api.app import create_app

    return create_app(
        config,
        task_store=stores["tasks"],
        comment_store=stores["comments"],
        rate_limit_store=stores["rate_limits"],
        verifier=verifier,
    )


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def create_task(client, auth_headers):
    """POST a task and return the decoded response body."""

    def _create(**fields):
        body = {"title": "Buy milk", **fields}
        resp = client.post("/api/v1/tasks", json=body, headers=auth_headers)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _create
