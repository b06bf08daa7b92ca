"""Append-only JSON-lines audit log."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional
import json
import logging
import os
import threading

from .types import RunResult

logger = logging.getLogger(__name__)

Redact = Callable[[str], str]


def iso_now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class AuditLog:
    """One JSON record per line, written with a single ``O_APPEND`` write.

    Concurrent writers inside the process are serialised by a mutex; the
    append flag keeps records from separate processes from interleaving.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def record_run(
        self,
        result: RunResult,
        *,
        error: Optional[str] = None,
        include_tags: tuple[str, ...] = (),
        exclude_tags: tuple[str, ...] = (),
        redact: Optional[Redact] = None,
    ) -> dict[str, Any]:
        scrub = redact or (lambda text: text)
        record = {
            "event": "run",
            "run_id": result.run_id,
            "host": result.host,
            "started_at": format_timestamp(result.started_at),
            "finished_at": format_timestamp(result.finished_at),
            "status": result.status.value,
            "tags": list(include_tags),
            "skip_tags": list(exclude_tags),
            "tasks": [
                {
                    "name": item.task,
                    "kind": item.kind,
                    "outcome": item.outcome.value,
                    "details": scrub(item.details),
                    "ignored": item.ignored,
                }
                for item in result.results
            ],
            "error": scrub(error) if error else None,
        }
        self._append(record)
        return record

    def record_event(
        self,
        event: str,
        host: str,
        detail: str = "",
        *,
        level: str = "warning",
        **extra: Any,
    ) -> dict[str, Any]:
        record = {"event": event, "host": host, "timestamp": iso_now(), "level": level, "detail": detail, **extra}
        self._append(record)
        return record

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        records = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt audit record in %s", self.path)
        return records

    def _append(self, record: dict[str, Any]) -> None:
        payload = (json.dumps(record, sort_keys=True, default=str) + "\n").encode("utf-8")
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
            try:
                os.write(fd, payload)
            finally:
                os.close(fd)
        logger.debug("audit event=%s host=%s", record.get("event"), record.get("host"))
