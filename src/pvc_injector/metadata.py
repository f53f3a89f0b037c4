from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
import sqlite3
from typing import Any

from .models import WORKFLOW_RUNNING, WorkflowRecord


def utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


class ProvisioningHistoryStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    step TEXT NOT NULL,
                    message TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_workflow_history_lookup
                ON workflow_history(namespace, name, started_at)
                """
            )
            connection.commit()

    def record_started(self, *, namespace: str, name: str, step: str = "validating") -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                INSERT INTO workflow_history (namespace, name, state, step, message, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (namespace, name, WORKFLOW_RUNNING, step, "", utc_now_iso()),
            )
            connection.commit()
            return int(cursor.lastrowid)

    def record_step(self, run_id: int, step: str) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                "UPDATE workflow_history SET step = ? WHERE id = ? AND finished_at IS NULL",
                (step, run_id),
            )
            connection.commit()

    def record_finished(self, run_id: int, *, state: str, step: str, message: str = "") -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                UPDATE workflow_history
                SET state = ?, step = ?, message = ?, finished_at = ?
                WHERE id = ?
                """,
                (state, step, message, utc_now_iso(), run_id),
            )
            connection.commit()

    def get_latest(self, namespace: str, name: str) -> WorkflowRecord | None:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT namespace, name, state, step, message, started_at, finished_at
                FROM workflow_history
                WHERE namespace = ? AND name = ?
                ORDER BY started_at DESC, id DESC
                LIMIT 1
                """,
                (namespace, name),
            )
            row = cursor.fetchone()

        if row is None:
            return None
        return WorkflowRecord(
            namespace=row[0],
            name=row[1],
            state=row[2],
            step=row[3],
            message=row[4] or "",
            started_at=row[5],
            finished_at=row[6],
        )

    def get_recent_records(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT namespace, name, state, step, message, started_at, finished_at
                FROM workflow_history
                ORDER BY started_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [
            {
                "namespace": row[0],
                "name": row[1],
                "state": row[2],
                "step": row[3],
                "message": row[4],
                "started_at": row[5],
                "finished_at": row[6],
            }
            for row in rows
        ]

    def count_records(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT COUNT(*) FROM workflow_history")
            row = cursor.fetchone()

        return int(row[0]) if row else 0
