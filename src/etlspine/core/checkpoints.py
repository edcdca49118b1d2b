"""
Checkpoint snapshots for external visibility and disaster recovery.

Orchestrators write checkpoints periodically and on terminal transitions.
They never read them back during a run: the in-memory status is
authoritative while an instance is alive.  Recovery tooling uses
``list_sync_checkpoints`` / ``latest_transformation_checkpoint`` to decide
where to restart.

Checkpoint writes are best-effort.  Callers log failures and carry on.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from etlspine.core.watermarks import WatermarkValue


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class SyncCheckpoint:
    """Progress of one table inside an incremental sync instance."""

    connection_id: str
    table: str
    execution_id: str
    watermark: WatermarkValue | None
    changes_processed: int
    batches_processed: int
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "table": self.table,
            "execution_id": self.execution_id,
            "watermark": self.watermark.to_json() if self.watermark else None,
            "changes_processed": self.changes_processed,
            "batches_processed": self.batches_processed,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class TransformationCheckpoint:
    """Completed-step list of one transformation pipeline run."""

    connection_id: str
    pipeline_id: str
    execution_id: str
    completed_steps: tuple[str, ...]
    started_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "pipeline_id": self.pipeline_id,
            "execution_id": self.execution_id,
            "completed_steps": list(self.completed_steps),
            "started_at": self.started_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }


@runtime_checkable
class CheckpointStore(Protocol):
    """Checkpoint persistence contract."""

    def create_sync_checkpoint(self, checkpoint: SyncCheckpoint) -> None: ...

    def create_transformation_checkpoint(self, checkpoint: TransformationCheckpoint) -> None: ...

    def cleanup_checkpoints(
        self, connection_id: str, retention_days: int, now: datetime | None = None
    ) -> int: ...


class SqlCheckpointStore:
    """Checkpoint store backed by a DB-API connection or an in-memory list.

    Args:
        conn: Optional database connection (``sqlite3`` style placeholders).
    """

    CREATE_TABLE = (
        "CREATE TABLE IF NOT EXISTS etl_checkpoints ("
        "  id INTEGER PRIMARY KEY AUTOINCREMENT,"
        "  checkpoint_type TEXT NOT NULL,"
        "  connection_id TEXT NOT NULL,"
        "  subject TEXT NOT NULL,"
        "  execution_id TEXT NOT NULL,"
        "  payload_json TEXT NOT NULL,"
        "  created_at TEXT NOT NULL)"
    )

    def __init__(self, conn: Any | None = None) -> None:
        self._conn = conn
        self._sync: list[SyncCheckpoint] = []
        self._transformation: list[TransformationCheckpoint] = []
        if conn is not None:
            conn.execute(self.CREATE_TABLE)
            conn.commit()

    # -- writes --------------------------------------------------------------

    def create_sync_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        if self._conn is None:
            self._sync.append(checkpoint)
            return
        self._insert("sync", checkpoint.connection_id, checkpoint.table, checkpoint.execution_id,
                     checkpoint.to_dict(), checkpoint.created_at)

    def create_transformation_checkpoint(self, checkpoint: TransformationCheckpoint) -> None:
        if self._conn is None:
            self._transformation.append(checkpoint)
            return
        self._insert("transformation", checkpoint.connection_id, checkpoint.pipeline_id,
                     checkpoint.execution_id, checkpoint.to_dict(), checkpoint.created_at)

    def cleanup_checkpoints(
        self, connection_id: str, retention_days: int, now: datetime | None = None
    ) -> int:
        """Delete checkpoints older than *retention_days*.  Returns rows removed.

        *now* should come from the same clock that stamped the checkpoints;
        it defaults to wall time.
        """
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        if self._conn is None:
            before = len(self._sync) + len(self._transformation)
            self._sync = [
                c for c in self._sync
                if c.connection_id != connection_id or c.created_at >= cutoff
            ]
            self._transformation = [
                c for c in self._transformation
                if c.connection_id != connection_id or c.created_at >= cutoff
            ]
            return before - len(self._sync) - len(self._transformation)
        cur = self._conn.execute(
            "DELETE FROM etl_checkpoints WHERE connection_id = ? AND created_at < ?",
            (connection_id, cutoff.isoformat()),
        )
        self._conn.commit()
        return cur.rowcount

    # -- reads (recovery tooling) --------------------------------------------

    def list_sync_checkpoints(self, connection_id: str, table: str | None = None) -> list[dict[str, Any]]:
        """Return sync checkpoints as dicts, oldest first."""
        if self._conn is None:
            return [
                c.to_dict() for c in self._sync
                if c.connection_id == connection_id and (table is None or c.table == table)
            ]
        sql = "SELECT payload_json FROM etl_checkpoints WHERE checkpoint_type = 'sync' AND connection_id = ?"
        params: tuple = (connection_id,)
        if table is not None:
            sql += " AND subject = ?"
            params = (connection_id, table)
        rows = self._conn.execute(sql + " ORDER BY id", params).fetchall()
        return [json.loads(r[0]) for r in rows]

    def latest_transformation_checkpoint(
        self, connection_id: str, pipeline_id: str
    ) -> dict[str, Any] | None:
        """Return the most recent checkpoint of *pipeline_id*, if any."""
        if self._conn is None:
            matches = [
                c for c in self._transformation
                if c.connection_id == connection_id and c.pipeline_id == pipeline_id
            ]
            return matches[-1].to_dict() if matches else None
        row = self._conn.execute(
            "SELECT payload_json FROM etl_checkpoints "
            "WHERE checkpoint_type = 'transformation' AND connection_id = ? AND subject = ? "
            "ORDER BY id DESC LIMIT 1",
            (connection_id, pipeline_id),
        ).fetchone()
        return json.loads(row[0]) if row else None

    # -- internal ------------------------------------------------------------

    def _insert(
        self,
        checkpoint_type: str,
        connection_id: str,
        subject: str,
        execution_id: str,
        payload: dict[str, Any],
        created_at: datetime,
    ) -> None:
        assert self._conn is not None
        self._conn.execute(
            "INSERT INTO etl_checkpoints "
            "  (checkpoint_type, connection_id, subject, execution_id, payload_json, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (checkpoint_type, connection_id, subject, execution_id,
             json.dumps(payload), created_at.isoformat()),
        )
        self._conn.commit()
