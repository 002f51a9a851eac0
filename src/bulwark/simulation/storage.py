"""
Record stores for the simulation layer.

A store maps a request fingerprint to exactly one ``SimulationRecord``.
Records are immutable once written: a second ``put`` for a fingerprint that
is already stored is ignored and returns ``False``.

Backends:
    - ``InMemoryRecordStore``: dict-backed, for tests and one-off sessions
    - ``JsonFileRecordStore``: one JSON fixture file per session

Fixture file layout::

    {
      "id": "jira-smoke",
      "created_at": "2026-01-05T10:00:00+00:00",
      "metadata": {"adapter": "jira"},
      "records": [
        {
          "fingerprint": "9f2c...",
          "operation_name": "issue.get",
          "serialized_request": "{\\"payload\\":{\\"key\\":\\"ABC-1\\"},...}",
          "serialized_response": {"status": 200, "body": {...}, "headers": {}},
          "timestamp": "2026-01-05T10:00:01+00:00"
        }
      ]
    }

Tags:
    simulation, record-replay, fixtures, storage, bulwark

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from bulwark.core.errors import SimulationModeMismatchError
from bulwark.core.logging import get_logger
from bulwark.core.models import Response

logger = get_logger(__name__)


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class SimulationRecord:
    """One recorded response keyed by request fingerprint.

    Attributes:
        fingerprint: SHA-256 of the operation name and canonical request
        operation_name: Operation the record was captured for
        serialized_request: Canonical JSON of the request, for inspection
        serialized_response: ``Response.to_dict()`` of the recorded response
        timestamp: ISO-8601 UTC capture time
    """

    fingerprint: str
    operation_name: str
    serialized_request: str
    serialized_response: dict[str, Any]
    timestamp: str = field(default_factory=utcnow_iso)

    def response(self) -> Response:
        """A fresh response; callers may mutate it freely."""
        return Response.from_dict(copy.deepcopy(self.serialized_response))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SimulationRecord:
        return cls(
            fingerprint=data["fingerprint"],
            operation_name=data["operation_name"],
            serialized_request=data.get("serialized_request", ""),
            serialized_response=dict(data["serialized_response"]),
            timestamp=data.get("timestamp") or utcnow_iso(),
        )


class InMemoryRecordStore:
    """Dict-backed record store."""

    def __init__(self, records: list[SimulationRecord] | None = None, *, read_only: bool = False):
        self.read_only = read_only
        self._records: dict[str, SimulationRecord] = {}
        self._lock = threading.Lock()
        for record in records or []:
            self._records.setdefault(record.fingerprint, record)

    def get(self, fingerprint: str) -> SimulationRecord | None:
        with self._lock:
            return self._records.get(fingerprint)

    def put(self, record: SimulationRecord) -> bool:
        if self.read_only:
            raise SimulationModeMismatchError("Record store is read-only")
        with self._lock:
            if record.fingerprint in self._records:
                return False
            self._records[record.fingerprint] = record
            return True

    def records(self) -> list[SimulationRecord]:
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._records


class JsonFileRecordStore(InMemoryRecordStore):
    """Record store persisted as one JSON session file.

    The file is loaded on construction when it exists. Every successful
    ``put`` rewrites it atomically unless ``autosave`` is off, in which case
    call ``save()``.

    Args:
        path: Fixture file
        read_only: Refuse writes; the file must exist
        session_id: Id written to a new file (default: random UUID)
        metadata: Metadata written to a new file
        autosave: Persist after every new record
    """

    def __init__(
        self,
        path: str | Path,
        *,
        read_only: bool = False,
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        autosave: bool = True,
    ):
        super().__init__(read_only=read_only)
        self.path = Path(path)
        self.autosave = autosave
        self.session_id = session_id or str(uuid.uuid4())
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.created_at = utcnow_iso()

        if self.path.exists():
            self._load()
        elif read_only:
            raise SimulationModeMismatchError(f"Simulation fixture not found: {self.path}")

    def _load(self) -> None:
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self.session_id = data.get("id", self.session_id)
        self.created_at = data.get("created_at", self.created_at)
        self.metadata = {**data.get("metadata", {}), **self.metadata}
        for raw in data.get("records", []):
            record = SimulationRecord.from_dict(raw)
            self._records.setdefault(record.fingerprint, record)
        logger.debug(
            "simulation.fixture_loaded",
            path=str(self.path),
            session_id=self.session_id,
            records=len(self._records),
        )

    def put(self, record: SimulationRecord) -> bool:
        added = super().put(record)
        if added and self.autosave:
            self.save()
        return added

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "created_at": self.created_at,
            "metadata": self.metadata,
            "records": [r.to_dict() for r in self.records()],
        }

    def save(self) -> None:
        """Write the session file atomically."""
        if self.read_only:
            raise SimulationModeMismatchError("Record store is read-only")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(self.to_dict(), indent=2, sort_keys=True, ensure_ascii=False)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


__all__ = [
    "SimulationRecord",
    "InMemoryRecordStore",
    "JsonFileRecordStore",
]
