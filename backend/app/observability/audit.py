"""Append-only audit log of write-path anomalies needing reconciliation."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from typing_extensions import Literal

from backend.app.config import ObservabilityConfig

LOGGER = logging.getLogger(__name__)

AuditEventType = Literal["ambiguous_write", "orphaned_receipt"]


def _ensure_timezone(value: datetime) -> datetime:
    """Return a timezone-aware datetime normalised to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalise_payload(value: object) -> object:
    """Convert payload values into JSON serialisable primitives."""

    if isinstance(value, datetime):
        return _ensure_timezone(value).isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _normalise_payload(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_payload(item) for item in value]
    return value


class WriteAuditLog:
    """Persist ambiguous and orphaned writes as JSON lines for operators.

    Nothing here heals the condition; the log is the input to a manual or
    future automated reconciliation of ledger receipts without metadata.
    """

    def __init__(
        self,
        path: Path,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._path = path
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(
        cls,
        config: ObservabilityConfig,
        *,
        root_dir: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "WriteAuditLog":
        """Build the log at ``<root_dir>/<config.root_dir>/<filename>``."""

        base_root = root_dir or Path(__file__).resolve().parents[3]
        root = Path(config.root_dir)
        if not root.is_absolute():
            root = base_root / root
        return cls(root / config.write_audit_filename, clock=clock)

    @property
    def path(self) -> Path:
        """Return the location of the audit log."""

        return self._path

    def record(self, event_type: AuditEventType, payload: Mapping[str, object]) -> None:
        """Append one event to the log."""

        enriched = dict(payload)
        enriched["event_type"] = event_type
        enriched.setdefault("timestamp", _ensure_timezone(self._clock()))
        normalised = _normalise_payload(enriched)
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(normalised, sort_keys=True))
                handle.write("\n")
        except OSError:  # pragma: no cover - writing failures logged
            LOGGER.exception("Failed to write audit event to %s", self._path)

    def read_events(self, event_type: Optional[AuditEventType] = None) -> List[Dict[str, object]]:
        """Return recorded events, optionally filtered by type."""

        if not self._path.exists():
            return []
        events: List[Dict[str, object]] = []
        with self._path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    LOGGER.warning("Skipping corrupt audit line in %s", self._path)
                    continue
                if event_type is None or entry.get("event_type") == event_type:
                    events.append(entry)
        return events


__all__ = ["AuditEventType", "WriteAuditLog"]
