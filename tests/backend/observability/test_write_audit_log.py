"""Tests for the write-path audit log."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from backend.app.config import ObservabilityConfig
from backend.app.observability import WriteAuditLog

FROZEN = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_records_are_appended_as_json_lines(tmp_path) -> None:
    log = WriteAuditLog(tmp_path / "nested" / "audit.jsonl", clock=lambda: FROZEN)
    log.record("ambiguous_write", {"bucket": "b", "key": "k", "path": Path("/tmp/x")})
    log.record("orphaned_receipt", {"bucket": "b", "key": "k", "receipt_id": "rcpt-1"})

    lines = log.path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    events = log.read_events()
    assert events[0]["event_type"] == "ambiguous_write"
    assert events[0]["path"] == "/tmp/x"
    assert events[0]["timestamp"] == FROZEN.isoformat()
    assert [event["receipt_id"] for event in log.read_events("orphaned_receipt")] == ["rcpt-1"]


def test_corrupt_lines_are_skipped(tmp_path) -> None:
    path = tmp_path / "audit.jsonl"
    log = WriteAuditLog(path, clock=lambda: FROZEN)
    log.record("ambiguous_write", {"bucket": "b"})
    with path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n\n")
    assert len(log.read_events()) == 1


def test_missing_file_reads_empty(tmp_path) -> None:
    assert WriteAuditLog(tmp_path / "absent.jsonl").read_events() == []


def test_from_config_resolves_relative_root(tmp_path) -> None:
    config = ObservabilityConfig(root_dir="data/observability", write_audit_filename="audit.jsonl")
    log = WriteAuditLog.from_config(config, root_dir=tmp_path)
    assert log.path == tmp_path / "data" / "observability" / "audit.jsonl"
    assert log.path.parent.is_dir()

    absolute = ObservabilityConfig(root_dir=str(tmp_path / "abs"), write_audit_filename="a.jsonl")
    assert WriteAuditLog.from_config(absolute, root_dir=Path("/unused")).path == tmp_path / "abs" / "a.jsonl"
