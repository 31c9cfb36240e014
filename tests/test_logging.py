"""Unit tests for taskapi.engine.logging — JSONL audit writer, shipper, record builders."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import taskapi.engine.logging as audit_mod
from taskapi.engine.logging import (
    AuditRecord,
    AuditShipper,
    JsonlWriter,
    audit,
    lifecycle_record,
    rejection_record,
    request_record,
    start_audit_log,
    stop_audit_log,
)


def _today():
    return datetime.now(timezone.utc).date().isoformat()


def _read(directory, category):
    path = directory / category / f"{_today()}.jsonl"
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestAuditRecord:
    def test_line_is_compact_json(self):
        assert AuditRecord("system", {"event": "startup", "n": 1}).to_line() == '{"event":"startup","n":1}\n'


class TestJsonlWriter:
    def test_creates_category_dirs(self, tmp_path):
        JsonlWriter(str(tmp_path))
        for category in ("requests", "security", "system"):
            assert (tmp_path / category).is_dir()

    def test_append_groups_by_category(self, tmp_path):
        writer = JsonlWriter(str(tmp_path))
        written = writer.append([
            AuditRecord("requests", {"n": 1}),
            AuditRecord("security", {"n": 2}),
            AuditRecord("requests", {"n": 3}),
        ])
        assert written == 3
        assert _read(tmp_path, "requests") == [{"n": 1}, {"n": 3}]
        assert _read(tmp_path, "security") == [{"n": 2}]

    def test_unknown_category_goes_to_system(self, tmp_path):
        writer = JsonlWriter(str(tmp_path))
        writer.append([AuditRecord("mystery", {"n": 1})])
        assert _read(tmp_path, "system") == [{"n": 1}]

    def test_path_for_day(self, tmp_path):
        writer = JsonlWriter(str(tmp_path))
        assert writer.path_for("security", "2026-01-31") == tmp_path / "security" / "2026-01-31.jsonl"


class TestAuditShipper:
    def test_close_writes_buffered_records(self, tmp_path):
        shipper = AuditShipper(JsonlWriter(str(tmp_path)))
        assert shipper.submit(AuditRecord("system", {"n": 1})) is True
        assert not shipper.writer.path_for("system").exists()
        shipper.close()
        assert _read(tmp_path, "system") == [{"n": 1}]

    def test_full_buffer_drops(self, tmp_path):
        shipper = AuditShipper(JsonlWriter(str(tmp_path)), capacity=1)
        assert shipper.submit(AuditRecord("system", {})) is True
        assert shipper.submit(AuditRecord("system", {})) is False
        assert shipper.dropped == 1

    def test_worker_keeps_order(self, tmp_path):
        shipper = AuditShipper(JsonlWriter(str(tmp_path)), flush_interval_ms=10, batch_size=2).open()
        for i in range(5):
            shipper.submit(AuditRecord("requests", {"n": i}))
        shipper.close()
        assert [r["n"] for r in _read(tmp_path, "requests")] == [0, 1, 2, 3, 4]

    def test_write_failure_counts_as_dropped(self, tmp_path):
        writer = JsonlWriter(str(tmp_path))
        shipper = AuditShipper(writer)
        shipper.submit(AuditRecord("system", {}))
        with patch.object(writer, "append", side_effect=OSError("disk full")):
            shipper.close()
        assert shipper.dropped == 1


class TestBuilders:
    def test_request_record(self):
        record = request_record("req1", "GET", "/api/v1/tasks", 200, 12.345, client_ip="1.2.3.4")
        assert record.category == "requests"
        assert record.data["event"] == "api_request"
        assert record.data["level"] == "INFO"
        assert record.data["status"] == 200
        assert record.data["duration_ms"] == 12.35
        assert record.data["client_ip"] == "1.2.3.4"
        assert "rejected_by" not in record.data

    def test_request_record_server_error_level(self):
        assert request_record("r", "GET", "/", 500, 1.0).data["level"] == "ERROR"

    def test_rejection_record(self):
        record = rejection_record("auth", "req1", "POST", "/api/v1/tasks", reason="missing")
        assert record.category == "security"
        assert record.data["event"] == "auth_rejected"
        assert record.data["level"] == "WARNING"
        assert record.data["reason"] == "missing"
        assert "client_ip" not in record.data

    def test_lifecycle_record(self):
        record = lifecycle_record("startup", backend="memory")
        assert record.category == "system"
        assert record.data["details"] == {"backend": "memory"}
        assert "ts" in record.data
        assert "details" not in lifecycle_record("shutdown").data


class TestProcessShipper:
    def test_audit_when_off(self):
        assert audit_mod._shipper is None
        assert audit(lifecycle_record("startup")) is False

    def test_start_and_stop(self, tmp_path):
        shipper = start_audit_log(str(tmp_path))
        assert audit_mod._shipper is shipper
        assert audit(lifecycle_record("startup")) is True
        stop_audit_log()
        assert audit_mod._shipper is None
        assert _read(tmp_path, "system")[0]["event"] == "startup"

    def test_app_writes_audit_trail(self, tmp_path, stores, verifier, auth_headers):
        from fastapi.testclient import TestClient

        from taskapi.api.app import create_app
        from taskapi.engine.config import ServiceConfig

        config = ServiceConfig(
            auth={"token_secret": "s"},
            logging={"file_logging": True, "directory": str(tmp_path)},
        )
        app = create_app(
            config,
            task_store=stores["tasks"],
            comment_store=stores["comments"],
            rate_limit_store=stores["rate_limits"],
            verifier=verifier,
        )
        with TestClient(app) as client:
            ok = client.get("/api/v1/tasks", headers=auth_headers)
            client.get("/api/v1/tasks")

        requests = _read(tmp_path, "requests")
        assert [r["status"] for r in requests] == [200, 401]
        assert requests[0]["request_id"] == ok.headers["x-request-id"]
        assert requests[1]["rejected_by"] == "auth"
        assert _read(tmp_path, "security")[0]["event"] == "auth_rejected"
        assert [s["event"] for s in _read(tmp_path, "system")] == ["startup", "shutdown"]
