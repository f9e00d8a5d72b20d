"""Tests for audit records and sinks."""

import json
from unittest.mock import MagicMock, patch

from adminguard.service.audit import (
    AuditLogger,
    AuditOutcome,
    AuditRecord,
    JsonlAuditSink,
    MemoryAuditSink,
)
from adminguard.service.errors import RejectReason
from adminguard.service.injection import DetectionFinding, PatternCategory


def _record(**overrides) -> AuditRecord:
    fields = dict(
        request_id="req-1",
        actor_id="admin-0000001",
        operation="ban-user",
        outcome=AuditOutcome.REJECTED,
        reject_reason=RejectReason.INVALID_INPUT,
        status_code=400,
        findings=[
            DetectionFinding(field="userId.$ne", category=PatternCategory.QUERY_OPERATOR, matched_text="$ne")
        ],
        client_address="10.0.0.1",
    )
    fields.update(overrides)
    return AuditRecord(**fields)


class TestAuditRecord:
    def test_defaults(self):
        record = _record()
        assert record.record_id
        assert record.timestamp.tzinfo is not None

    def test_json_serialization(self):
        data = json.loads(_record().to_json())
        assert data["outcome"] == "rejected"
        assert data["reject_reason"] == "invalid_input"
        assert data["findings"] == [
            {"field": "userId.$ne", "category": "query_operator", "matched_text": "$ne"}
        ]


class TestAuditLogger:
    async def test_records_to_memory_sink(self):
        sink = MemoryAuditSink()
        audit = AuditLogger(sink)
        await audit.record(_record())
        await audit.record(_record(outcome=AuditOutcome.ADMITTED, reject_reason=None, status_code=200))
        assert [r.outcome for r in sink.records] == [AuditOutcome.REJECTED, AuditOutcome.ADMITTED]

    async def test_jsonl_sink_appends_one_line_per_record(self, tmp_path):
        path = tmp_path / "audit" / "records.jsonl"
        audit = AuditLogger(JsonlAuditSink(path))
        await audit.record(_record(request_id="a"))
        await audit.record(_record(request_id="b"))
        lines = path.read_text().splitlines()
        assert [json.loads(line)["request_id"] for line in lines] == ["a", "b"]

    async def test_sink_failure_never_raises(self):
        sink = MagicMock()
        sink.append.side_effect = OSError("disk full")
        audit = AuditLogger(sink)
        with patch("adminguard.service.audit.logger") as mock_logger:
            await audit.record(_record())

            mock_logger.error.assert_called_once()
            assert mock_logger.error.call_args[0][0] == "audit_sink_write_failed"
        assert audit.sink_failures == 1
