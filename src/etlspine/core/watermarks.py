"""
Watermark tracking for incremental change capture.

A watermark is the cursor marking the latest change already durably applied
for one (connection, table) pair.  The incremental sync orchestrator reads it
before each fetch and advances it only after the sub-batch it covers has been
applied by the connector.

Manifesto:
    A generic ``>`` over untyped cursor values is unsafe: ``"9" > "10"`` as
    strings, naive and aware datetimes refuse to compare, and binlog
    positions are not numbers at all.  Each incremental strategy therefore
    maps to one explicit watermark kind with its own comparator, and values
    of different kinds never compare.

    - **Forward-only advancement:** enforced by the caller (orchestrator)
    - **Kind-safe comparison:** INTEGER / TIMESTAMP / LOG_POSITION
    - **Persistence-agnostic:** database connection or in-memory (tests)

Architecture:
    ::

        IncrementalStrategy ──► WatermarkKind ──► WatermarkValue(kind, value)

        timestamp       ─► TIMESTAMP      datetime (UTC)
        auto_increment  ─► INTEGER        int
        change_log      ─► INTEGER        int (change version)
        binary_log      ─► LOG_POSITION   "mysql-bin.000042:1337"

        WatermarkStore.set_watermark(conn, table, value)
              │
              ▼
        ┌──────────────────────────────────────────────────────────┐
        │ etl_watermarks table (or in-memory dict)                 │
        │ connection_id | table_name | kind | value | updated_at   │
        └──────────────────────────────────────────────────────────┘

Examples:
    >>> from etlspine.core.watermarks import SqlWatermarkStore, WatermarkValue
    >>> store = SqlWatermarkStore()
    >>> store.set_watermark("pg-main", "public.orders", WatermarkValue.integer(42))
    >>> store.get_watermark("pg-main", "public.orders").value
    42

Guardrails:
    ❌ DON'T: Compare raw connector cursor values directly
    ✅ DO: Coerce them with ``WatermarkValue.coerce(kind, raw)``

    ❌ DON'T: Write a watermark before the batch is applied
    ✅ DO: Advance only after ``process_change_batch`` returned

Tags:
    watermark, incremental, cursor, resume, etl-spine
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from functools import total_ordering
from typing import Any, Protocol, runtime_checkable

from etlspine.core.errors import ValidationError


class WatermarkKind(str, Enum):
    """Comparison domain of a watermark value."""

    INTEGER = "integer"
    TIMESTAMP = "timestamp"
    LOG_POSITION = "log_position"


class WatermarkKindMismatchError(ValidationError):
    """Raised when watermarks of different kinds are compared."""

    def __init__(self, left: WatermarkKind, right: WatermarkKind):
        self.left = left
        self.right = right
        super().__init__(f"Cannot compare {left.value} watermark with {right.value} watermark")


_LOG_POSITION_RE = re.compile(r"^(?P<file>.+):(?P<offset>\d+)$")


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@total_ordering
@dataclass(frozen=True, slots=True)
class WatermarkValue:
    """Totally ordered cursor value tagged with its kind.

    Attributes:
        kind: Comparison domain.
        value: ``int`` for INTEGER, aware ``datetime`` for TIMESTAMP,
            ``str`` for LOG_POSITION.
    """

    kind: WatermarkKind
    value: int | datetime | str

    # -- constructors --------------------------------------------------------

    @classmethod
    def integer(cls, value: int) -> WatermarkValue:
        return cls.coerce(WatermarkKind.INTEGER, value)

    @classmethod
    def timestamp(cls, value: datetime | str) -> WatermarkValue:
        return cls.coerce(WatermarkKind.TIMESTAMP, value)

    @classmethod
    def log_position(cls, value: str) -> WatermarkValue:
        return cls.coerce(WatermarkKind.LOG_POSITION, value)

    @classmethod
    def coerce(cls, kind: WatermarkKind | str, raw: Any) -> WatermarkValue:
        """Build a value of *kind* from a raw connector cursor.

        Raises:
            ValidationError: If *raw* cannot represent a watermark of *kind*.
        """
        kind = WatermarkKind(kind)
        if isinstance(raw, WatermarkValue):
            if raw.kind is not kind:
                raise WatermarkKindMismatchError(raw.kind, kind)
            return raw

        if kind is WatermarkKind.INTEGER:
            if isinstance(raw, bool):
                raise ValidationError("Boolean is not a valid integer watermark", value=raw)
            try:
                return cls(kind, int(raw))
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid integer watermark: {raw!r}", value=raw, cause=e)

        if kind is WatermarkKind.TIMESTAMP:
            if isinstance(raw, datetime):
                return cls(kind, _to_utc(raw))
            if isinstance(raw, str):
                try:
                    return cls(kind, _to_utc(datetime.fromisoformat(raw)))
                except ValueError as e:
                    raise ValidationError(f"Invalid timestamp watermark: {raw!r}", value=raw, cause=e)
            raise ValidationError(f"Invalid timestamp watermark: {raw!r}", value=raw)

        if raw is None or str(raw) == "":
            raise ValidationError("Log position watermark cannot be empty", value=raw)
        return cls(kind, str(raw))

    # -- ordering ------------------------------------------------------------

    def _sort_key(self) -> tuple:
        if self.kind is WatermarkKind.LOG_POSITION:
            match = _LOG_POSITION_RE.match(self.value)  # type: ignore[arg-type]
            if match:
                return (0, match.group("file"), int(match.group("offset")))
            return (1, self.value, 0)
        return (self.value,)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, WatermarkValue):
            return NotImplemented
        if self.kind is not other.kind:
            raise WatermarkKindMismatchError(self.kind, other.kind)
        return self._sort_key() < other._sort_key()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WatermarkValue):
            return NotImplemented
        return self.kind is other.kind and self._sort_key() == other._sort_key()

    def __hash__(self) -> int:
        return hash((self.kind, self._sort_key()))

    # -- serialization -------------------------------------------------------

    def to_json(self) -> dict[str, Any]:
        raw = self.value.isoformat() if isinstance(self.value, datetime) else self.value
        return {"kind": self.kind.value, "value": raw}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> WatermarkValue:
        return cls.coerce(data["kind"], data["value"])

    def __str__(self) -> str:
        if isinstance(self.value, datetime):
            return self.value.isoformat()
        return str(self.value)


def max_watermark(values: list[WatermarkValue | None]) -> WatermarkValue | None:
    """Return the largest non-None value, or None when there is none."""
    present = [v for v in values if v is not None]
    if not present:
        return None
    return max(present)


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


@runtime_checkable
class WatermarkStore(Protocol):
    """Per-table progress cursor storage.

    ``get_watermark`` returns ``None`` for an untracked table, meaning
    "start of history".  Monotonicity is enforced by callers, not the store.
    """

    def get_watermark(self, connection_id: str, table: str) -> WatermarkValue | None: ...

    def set_watermark(self, connection_id: str, table: str, value: WatermarkValue) -> None: ...


class SqlWatermarkStore:
    """Persistence-agnostic watermark store.

    If *conn* is supplied (any object exposing ``.execute()`` and
    ``.commit()`` with ``?`` placeholders, e.g. ``sqlite3``), watermarks are
    persisted to the ``etl_watermarks`` table.  Otherwise an in-memory dict
    is used.

    Args:
        conn: Optional database connection.
    """

    CREATE_TABLE = (
        "CREATE TABLE IF NOT EXISTS etl_watermarks ("
        "  connection_id TEXT NOT NULL,"
        "  table_name TEXT NOT NULL,"
        "  kind TEXT NOT NULL,"
        "  value TEXT NOT NULL,"
        "  updated_at TEXT NOT NULL,"
        "  PRIMARY KEY (connection_id, table_name))"
    )

    def __init__(self, conn: Any | None = None) -> None:
        self._conn = conn
        self._mem: dict[tuple[str, str], WatermarkValue] = {}
        if conn is not None:
            conn.execute(self.CREATE_TABLE)
            conn.commit()

    def get_watermark(self, connection_id: str, table: str) -> WatermarkValue | None:
        if self._conn is None:
            return self._mem.get((connection_id, table))
        row = self._conn.execute(
            "SELECT kind, value FROM etl_watermarks WHERE connection_id = ? AND table_name = ?",
            (connection_id, table),
        ).fetchone()
        if row is None:
            return None
        return WatermarkValue.coerce(row[0], json.loads(row[1]))

    def set_watermark(self, connection_id: str, table: str, value: WatermarkValue) -> None:
        if self._conn is None:
            self._mem[(connection_id, table)] = value
            return
        payload = value.to_json()
        self._conn.execute(
            "INSERT INTO etl_watermarks (connection_id, table_name, kind, value, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(connection_id, table_name) DO UPDATE SET "
            "  kind = excluded.kind, "
            "  value = excluded.value, "
            "  updated_at = excluded.updated_at",
            (
                connection_id,
                table,
                payload["kind"],
                json.dumps(payload["value"]),
                datetime.now(UTC).isoformat(),
            ),
        )
        self._conn.commit()

    def delete_watermark(self, connection_id: str, table: str) -> bool:
        """Remove a watermark.  Returns True if it existed."""
        if self._conn is None:
            return self._mem.pop((connection_id, table), None) is not None
        cur = self._conn.execute(
            "DELETE FROM etl_watermarks WHERE connection_id = ? AND table_name = ?",
            (connection_id, table),
        )
        self._conn.commit()
        return cur.rowcount > 0
