"""
TaskAPI Audit Log — structured JSONL records of requests, rejections and
lifecycle events, written off the request path.

Layout on disk:
    {directory}/requests/2026-01-31.jsonl
    {directory}/security/2026-01-31.jsonl
    {directory}/system/2026-01-31.jsonl

Handlers never touch the disk: records are submitted to an AuditShipper,
whose worker thread appends them in batches. When the audit log is not
started, ``audit()`` is a cheap no-op.

Operational messages still go through stdlib ``logging`` loggers named
``taskapi.*``.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("taskapi.engine.logging")

AUDIT_CATEGORIES = ("requests", "security", "system")


@dataclass
class AuditRecord:
    category: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_line(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":")) + "\n"


class JsonlWriter:
    """Appends records to one file per category per UTC day."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._lock = threading.Lock()
        for category in AUDIT_CATEGORIES:
            (self.directory / category).mkdir(parents=True, exist_ok=True)

    def path_for(self, category: str, day: Optional[str] = None) -> Path:
        if category not in AUDIT_CATEGORIES:
            category = "system"
        day = day or datetime.now(timezone.utc).date().isoformat()
        return self.directory / category / f"{day}.jsonl"

    def append(self, records: Iterable[AuditRecord]) -> int:
        """Write records, one open per target file. Returns the count written."""
        by_path: Dict[Path, List[str]] = {}
        for record in records:
            by_path.setdefault(self.path_for(record.category), []).append(record.to_line())

        written = 0
        with self._lock:
            for path, lines in by_path.items():
                with path.open("a", encoding="utf-8") as fh:
                    fh.writelines(lines)
                written += len(lines)
        return written


class AuditShipper:
    """
    Bounded hand-off between request handlers and a JsonlWriter.

    ``submit`` never blocks; a full buffer drops the record and counts it.
    The worker wakes at least every ``flush_interval_ms`` and writes up to
    ``batch_size`` records per append.
    """

    def __init__(
        self,
        writer: JsonlWriter,
        flush_interval_ms: int = 100,
        batch_size: int = 50,
        capacity: int = 10000,
    ):
        self.writer = writer
        self._interval = flush_interval_ms / 1000.0
        self._batch_size = max(1, batch_size)
        self._buffer: "Queue[AuditRecord]" = Queue(maxsize=capacity)
        self._stopping = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self.dropped = 0

    def open(self) -> "AuditShipper":
        if self._worker is None:
            self._stopping.clear()
            self._worker = threading.Thread(target=self._run, name="taskapi-audit", daemon=True)
            self._worker.start()
            logger.info(f"Audit log writing to {self.writer.directory}")
        return self

    def close(self, timeout: float = 5.0) -> None:
        """Stop the worker, then write whatever is still buffered."""
        self._stopping.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None
        self._write(self._take(limit=None))
        if self.dropped:
            logger.warning(f"Audit log closed, {self.dropped} records dropped")

    def submit(self, record: AuditRecord) -> bool:
        try:
            self._buffer.put_nowait(record)
        except Full:
            self.dropped += 1
            return False
        return True

    def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                first = self._buffer.get(timeout=self._interval)
            except Empty:
                continue
            self._write([first] + self._take(limit=self._batch_size - 1))

    def _take(self, limit: Optional[int]) -> List[AuditRecord]:
        taken: List[AuditRecord] = []
        while limit is None or len(taken) < limit:
            try:
                taken.append(self._buffer.get_nowait())
            except Empty:
                break
        return taken

    def _write(self, records: List[AuditRecord]) -> None:
        if not records:
            return
        try:
            self.writer.append(records)
        except OSError as e:
            self.dropped += len(records)
            logger.error(f"Audit write failed, {len(records)} records lost: {e}")


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------

def _record(category: str, event: str, level: str, **fields: Any) -> AuditRecord:
    data: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "level": level,
    }
    data.update((k, v) for k, v in fields.items() if v is not None)
    return AuditRecord(category, data)


def request_record(
    request_id: str,
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    client_ip: Optional[str] = None,
    rejected_by: Optional[str] = None,
) -> AuditRecord:
    """One per request. Bodies and credentials are never recorded."""
    return _record(
        "requests",
        "api_request",
        "ERROR" if status_code >= 500 else "INFO",
        request_id=request_id,
        method=method,
        path=path,
        status=status_code,
        duration_ms=round(duration_ms, 2),
        client_ip=client_ip,
        rejected_by=rejected_by,
    )


def rejection_record(
    stage: str,
    request_id: str,
    method: str,
    path: str,
    client_ip: Optional[str] = None,
    reason: Optional[str] = None,
) -> AuditRecord:
    """A pipeline stage (auth, csrf, rate_limit) turned a request away."""
    return _record(
        "security",
        f"{stage}_rejected",
        "WARNING",
        request_id=request_id,
        method=method,
        path=path,
        client_ip=client_ip,
        reason=reason,
    )


def lifecycle_record(event: str, **details: Any) -> AuditRecord:
    return _record("system", event, "INFO", details=details or None)


# ---------------------------------------------------------------------------
# Process-wide shipper
# ---------------------------------------------------------------------------

_shipper: Optional[AuditShipper] = None


def start_audit_log(
    directory: str,
    flush_interval_ms: int = 100,
    batch_size: int = 50,
    capacity: int = 10000,
) -> AuditShipper:
    global _shipper
    stop_audit_log()
    _shipper = AuditShipper(
        JsonlWriter(directory),
        flush_interval_ms=flush_interval_ms,
        batch_size=batch_size,
        capacity=capacity,
    ).open()
    return _shipper


def audit(record: AuditRecord) -> bool:
    """Submit a record; False when the audit log is off or full."""
    return _shipper.submit(record) if _shipper is not None else False


def stop_audit_log() -> None:
    global _shipper
    if _shipper is not None:
        _shipper.close()
        _shipper = None
