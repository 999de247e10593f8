"""Audit records for update attempts.

One record per accepted update attempt. The orchestrator is the single
writer; HTTP status pollers read concurrently. ``update`` overlays only the
fields it is given and enforces two rules: status moves forward only
(``failed -> rolled_back`` being the one edge out of a failure), and a
record with ``completed_at`` set is read-only.

Two backends are provided: ``PostgresAuditRecorder`` follows the same
asyncpg lifecycle as the other storage classes (``initialize(pool)`` then
async reads/writes), and ``InMemoryAuditRecorder`` serves development and
tests.
"""

from __future__ import annotations

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from aether_updater.errors import (
    AuditRecordFinalizedError,
    AuditRecordNotFoundError,
    InvalidStatusTransitionError,
)
from aether_updater.logging import get_logger
from aether_updater.models import (
    AuditRecord,
    AuditStatus,
    LogEntry,
    is_allowed_transition,
    utcnow,
)

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

log = get_logger("aether_updater.audit")

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "previous_commit",
        "new_commit",
        "logs",
        "error_message",
        "completed_at",
        "duration_seconds",
        "manual_intervention_required",
    }
)

DEFAULT_LIST_LIMIT = 50


def normalize_update(fields: dict[str, Any]) -> dict[str, Any]:
    """Validate field names and coerce values of a partial update."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown audit fields: {', '.join(sorted(unknown))}")

    normalized = dict(fields)
    if "status" in normalized:
        normalized["status"] = AuditStatus(normalized["status"])
    if "logs" in normalized:
        normalized["logs"] = [
            entry if isinstance(entry, LogEntry) else LogEntry.from_dict(entry)
            for entry in normalized["logs"]
        ]
    return normalized


def check_update(record: AuditRecord, fields: dict[str, Any]) -> None:
    """Raise if applying *fields* to *record* breaks the record lifecycle."""
    if record.is_finalized:
        raise AuditRecordFinalizedError(f"Audit record {record.id} is already finalized")
    new_status = fields.get("status")
    if new_status is not None and not is_allowed_transition(record.status, new_status):
        raise InvalidStatusTransitionError(
            f"Audit record {record.id} cannot move from {record.status.value} "
            f"to {new_status.value}"
        )


class AuditRecorder(ABC):
    """Create/read/update store for update audit records."""

    @abstractmethod
    async def create(
        self,
        initiated_by: str,
        status: AuditStatus = AuditStatus.IN_PROGRESS,
    ) -> int:
        """Create a record and return its id."""

    @abstractmethod
    async def update(self, record_id: int, **fields: Any) -> AuditRecord:
        """Overlay *fields* onto the record and return the updated copy."""

    @abstractmethod
    async def get(self, record_id: int) -> AuditRecord | None: ...

    @abstractmethod
    async def latest(self) -> AuditRecord | None: ...

    @abstractmethod
    async def list_by_status(self, status: AuditStatus | str) -> list[AuditRecord]: ...

    @abstractmethod
    async def list(self, limit: int = DEFAULT_LIST_LIMIT) -> list[AuditRecord]: ...


# ------------------------------------------------------------------
# In-memory backend
# ------------------------------------------------------------------


class InMemoryAuditRecorder(AuditRecorder):
    """Process-local recorder; reads return deep copies."""

    def __init__(self) -> None:
        self._records: dict[int, AuditRecord] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    async def create(
        self,
        initiated_by: str,
        status: AuditStatus = AuditStatus.IN_PROGRESS,
    ) -> int:
        async with self._lock:
            record_id = self._next_id
            self._next_id += 1
            self._records[record_id] = AuditRecord(
                id=record_id,
                initiated_by=initiated_by,
                status=AuditStatus(status),
            )
        log.debug("audit_record_created", id=record_id, initiated_by=initiated_by)
        return record_id

    async def update(self, record_id: int, **fields: Any) -> AuditRecord:
        normalized = normalize_update(fields)
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise AuditRecordNotFoundError(f"Audit record {record_id} not found")
            check_update(record, normalized)
            for name, value in normalized.items():
                setattr(record, name, value)
            return copy.deepcopy(record)

    async def get(self, record_id: int) -> AuditRecord | None:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def latest(self) -> AuditRecord | None:
        records = self._ordered(self._records.values())
        return copy.deepcopy(records[0]) if records else None

    async def list_by_status(self, status: AuditStatus | str) -> list[AuditRecord]:
        wanted = AuditStatus(status)
        return [
            copy.deepcopy(r) for r in self._ordered(self._records.values()) if r.status == wanted
        ]

    async def list(self, limit: int = DEFAULT_LIST_LIMIT) -> list[AuditRecord]:
        return [copy.deepcopy(r) for r in self._ordered(self._records.values())[:limit]]

    @staticmethod
    def _ordered(records: Iterable[AuditRecord]) -> list[AuditRecord]:
        return sorted(records, key=lambda r: (r.started_at, r.id), reverse=True)


# ------------------------------------------------------------------
# PostgreSQL backend
# ------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS update_audit (
    id SERIAL PRIMARY KEY,
    initiated_by TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    previous_commit TEXT,
    new_commit TEXT,
    logs JSONB NOT NULL DEFAULT '[]'::jsonb,
    error_message TEXT,
    started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    completed_at TIMESTAMPTZ,
    duration_seconds INTEGER,
    manual_intervention_required BOOLEAN NOT NULL DEFAULT FALSE
);

ALTER TABLE update_audit
    ADD COLUMN IF NOT EXISTS manual_intervention_required BOOLEAN NOT NULL DEFAULT FALSE;

CREATE INDEX IF NOT EXISTS idx_update_audit_started_at
    ON update_audit (started_at);
CREATE INDEX IF NOT EXISTS idx_update_audit_status
    ON update_audit (status);
"""

_COLUMNS = (
    "id, initiated_by, status, previous_commit, new_commit, logs, "
    "error_message, started_at, completed_at, duration_seconds, "
    "manual_intervention_required"
)


def _row_to_record(row: Any) -> AuditRecord:
    raw_logs = row["logs"]
    if isinstance(raw_logs, str):
        raw_logs = json.loads(raw_logs or "[]")
    return AuditRecord(
        id=row["id"],
        initiated_by=row["initiated_by"],
        status=AuditStatus(row["status"]),
        previous_commit=row["previous_commit"],
        new_commit=row["new_commit"],
        logs=[LogEntry.from_dict(entry) for entry in raw_logs or []],
        error_message=row["error_message"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        duration_seconds=row["duration_seconds"],
        manual_intervention_required=bool(row["manual_intervention_required"]),
    )


def _to_column(name: str, value: Any) -> Any:
    if name == "status":
        return value.value
    if name == "logs":
        return json.dumps([entry.to_dict() for entry in value])
    return value


class PostgresAuditRecorder(AuditRecorder):
    """PostgreSQL-backed recorder.

    Usage::

        recorder = PostgresAuditRecorder()
        await recorder.initialize(pool)
        record_id = await recorder.create("admin-1")
    """

    def __init__(self) -> None:
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create the table and store the connection pool reference."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_SCHEMA)
        log.info("audit_storage.initialized")

    async def create(
        self,
        initiated_by: str,
        status: AuditStatus = AuditStatus.IN_PROGRESS,
    ) -> int:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                """
                INSERT INTO update_audit (initiated_by, status, started_at, logs)
                VALUES ($1, $2, $3, $4)
                RETURNING id
                """,
                initiated_by,
                AuditStatus(status).value,
                utcnow(),
                "[]",
            )
        log.debug("audit_record_created", id=row["id"], initiated_by=initiated_by)
        return row["id"]  # type: ignore[no-any-return]

    async def update(self, record_id: int, **fields: Any) -> AuditRecord:
        normalized = normalize_update(fields)
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM update_audit WHERE id = $1 FOR UPDATE",
                    record_id,
                )
                if row is None:
                    raise AuditRecordNotFoundError(f"Audit record {record_id} not found")
                current = _row_to_record(row)
                check_update(current, normalized)
                if not normalized:
                    return current

                assignments = []
                values: list[Any] = []
                for index, (name, value) in enumerate(sorted(normalized.items()), start=1):
                    assignments.append(f"{name} = ${index}")
                    values.append(_to_column(name, value))
                values.append(record_id)
                row = await conn.fetchrow(
                    f"UPDATE update_audit SET {', '.join(assignments)} "
                    f"WHERE id = ${len(values)} RETURNING {_COLUMNS}",
                    *values,
                )
        return _row_to_record(row)

    async def get(self, record_id: int) -> AuditRecord | None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM update_audit WHERE id = $1",
                record_id,
            )
        return _row_to_record(row) if row is not None else None

    async def latest(self) -> AuditRecord | None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM update_audit ORDER BY started_at DESC, id DESC LIMIT 1"
            )
        return _row_to_record(row) if row is not None else None

    async def list_by_status(self, status: AuditStatus | str) -> list[AuditRecord]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM update_audit WHERE status = $1 "
                "ORDER BY started_at DESC, id DESC",
                AuditStatus(status).value,
            )
        return [_row_to_record(row) for row in rows]

    async def list(self, limit: int = DEFAULT_LIST_LIMIT) -> list[AuditRecord]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM update_audit ORDER BY started_at DESC, id DESC LIMIT $1",
                limit,
            )
        return [_row_to_record(row) for row in rows]
