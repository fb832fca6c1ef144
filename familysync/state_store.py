from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from familysync.models import ReconcileResult


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS reconcile_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            collection TEXT NOT NULL,
            status TEXT NOT NULL,
            created INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            failed INTEGER NOT NULL,
            duration_ms INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            collection TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS pending_operations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            collection TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            operation TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            UNIQUE (collection, entity_id)
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record_reconcile_run(self, result: ReconcileResult) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO reconcile_runs(run_at, collection, status, created, updated, deleted, failed, duration_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.run_at.isoformat(),
                        result.collection,
                        result.status,
                        int(result.created),
                        int(result.updated),
                        int(result.deleted),
                        int(result.failed),
                        int(result.duration_ms),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_reconcile_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, collection, status, created, updated, deleted, failed, duration_ms
                    FROM reconcile_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        collection: str,
        entity_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(created_at, collection, entity_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), collection, entity_id, action, json.dumps(details, ensure_ascii=False, default=str)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if action is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, collection, entity_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, collection, entity_id, action, details_json
                        FROM audit_events
                        WHERE action = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(action), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def enqueue_pending(
        self,
        *,
        collection: str,
        entity_id: str,
        operation: str,
        payload: dict[str, Any],
        error: str,
    ) -> None:
        """Queue a failed remote operation, one entry per entity.

        A queued ``create`` stays a create when a later update of the same
        entity fails too, since the remote store has never seen it.
        """
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT operation FROM pending_operations WHERE collection = ? AND entity_id = ?",
                    (collection, entity_id),
                ).fetchone()
                if row is not None and row["operation"] == "create" and operation == "update":
                    operation = "create"
                conn.execute(
                    """
                    INSERT INTO pending_operations(
                        created_at, updated_at, collection, entity_id, operation, payload_json, attempts, last_error
                    )
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                    ON CONFLICT(collection, entity_id) DO UPDATE SET
                        operation = excluded.operation,
                        payload_json = excluded.payload_json,
                        last_error = excluded.last_error,
                        updated_at = excluded.updated_at
                    """,
                    (
                        _utc_now(),
                        _utc_now(),
                        collection,
                        entity_id,
                        operation,
                        json.dumps(payload, ensure_ascii=False, default=str),
                        error,
                    ),
                )
                conn.commit()

    def pending_operations(self, collection: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if collection is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, collection, entity_id, operation, payload_json, attempts, last_error
                        FROM pending_operations
                        ORDER BY id ASC
                        """
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, collection, entity_id, operation, payload_json, attempts, last_error
                        FROM pending_operations
                        WHERE collection = ?
                        ORDER BY id ASC
                        """,
                        (collection,),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["payload"] = json.loads(item.pop("payload_json") or "{}")
            output.append(item)
        return output

    def drop_pending(self, collection: str, entity_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM pending_operations WHERE collection = ? AND entity_id = ?",
                    (collection, entity_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    def bump_pending(self, pending_id: int, error: str) -> int:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE pending_operations
                    SET attempts = attempts + 1, last_error = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (str(error), _utc_now(), int(pending_id)),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT attempts FROM pending_operations WHERE id = ?",
                    (int(pending_id),),
                ).fetchone()
        return int(row["attempts"]) if row else 0
