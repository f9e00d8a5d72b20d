from __future__ import annotations

import asyncio
import json
import os
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Protocol
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from adminguard.logging import get_logger
from adminguard.service.errors import RejectReason
from adminguard.service.injection import DetectionFinding

logger = get_logger(__name__)


class AuditOutcome(str, Enum):
    ADMITTED = "admitted"
    REJECTED = "rejected"
    ERROR = "error"


class AuditRecord(BaseModel):
    """One gated attempt. Written once, never updated."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: str
    actor_id: Optional[str] = None
    operation: str
    outcome: AuditOutcome
    reject_reason: Optional[RejectReason] = None
    status_code: int
    findings: List[DetectionFinding] = Field(default_factory=list)
    target_summary: Optional[str] = None
    client_address: Optional[str] = None
    error_detail: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), separators=(",", ":"), sort_keys=True)


class AuditSink(Protocol):
    def append(self, record: AuditRecord) -> None: ...


class MemoryAuditSink:
    """Keeps records in process; used for development and tests."""

    def __init__(self) -> None:
        self._records: List[AuditRecord] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> List[AuditRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class JsonlAuditSink:
    """Append-only JSON Lines file, one record per line."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        line = record.to_json() + "\n"
        with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()


class AuditLogger:
    """Write audit records without ever failing the request.

    A sink failure is reported on the operational log and counted; the
    outcome already decided for the request stands.
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink
        self.sink_failures = 0
        self._failure_lock = threading.Lock()

    async def record(self, entry: AuditRecord) -> None:
        try:
            await asyncio.to_thread(self.sink.append, entry)
        except Exception as exc:
            with self._failure_lock:
                self.sink_failures += 1
            logger.error(
                "audit_sink_write_failed",
                record_id=entry.record_id,
                request_id=entry.request_id,
                operation=entry.operation,
                outcome=entry.outcome.value,
                error=str(exc),
                failures=self.sink_failures,
            )
            return
        logger.info(
            "audit_recorded",
            record_id=entry.record_id,
            operation=entry.operation,
            outcome=entry.outcome.value,
            reject_reason=entry.reject_reason.value if entry.reject_reason else None,
            status_code=entry.status_code,
            findings=len(entry.findings),
        )


__all__ = [
    "AuditOutcome",
    "AuditRecord",
    "AuditSink",
    "MemoryAuditSink",
    "JsonlAuditSink",
    "AuditLogger",
]
