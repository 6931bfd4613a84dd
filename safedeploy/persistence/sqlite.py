"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..contracts import PipelineExecution
from .models import ActionRecord
from .repository import ExecutionRepository


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                pipeline_id TEXT NOT NULL,
                status TEXT NOT NULL,
                document TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS action_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                stage TEXT NOT NULL,
                action TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 1,
                started_at TEXT,
                completed_at TEXT,
                status TEXT,
                output TEXT,
                UNIQUE (execution_id, stage, action, attempt)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(self, execution: PipelineExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO executions (execution_id, pipeline_id, status, document, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            execution.execution_id,
            execution.pipeline_id,
            execution.status.value,
            execution.model_dump_json(),
            execution.created_at.isoformat(),
            execution.updated_at.isoformat(),
        )

    async def save_execution(self, execution: PipelineExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET status = ?, document = ?, updated_at = ? WHERE execution_id = ?",
            execution.status.value,
            execution.model_dump_json(),
            execution.updated_at.isoformat(),
            execution.execution_id,
        )

    async def get_execution(self, execution_id: str) -> PipelineExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM executions WHERE execution_id = ?",
            execution_id,
        )
        if not row:
            return None
        return PipelineExecution.model_validate_json(row["document"])

    async def list_executions(
        self, pipeline_id: Optional[str] = None
    ) -> list[PipelineExecution]:
        if pipeline_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT document FROM executions ORDER BY created_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT document FROM executions WHERE pipeline_id = ? ORDER BY created_at",
                pipeline_id,
            )
        return [PipelineExecution.model_validate_json(r["document"]) for r in rows]

    async def mark_action_started(
        self, execution_id: str, stage: str, action: str, attempt: int = 1
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO action_history (execution_id, stage, action, attempt, started_at) VALUES (?, ?, ?, ?, ?)",
            execution_id,
            stage,
            action,
            attempt,
            _now(),
        )

    async def mark_action_completed(
        self,
        execution_id: str,
        stage: str,
        action: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE action_history
            SET completed_at = ?, status = ?, output = ?
            WHERE execution_id = ? AND stage = ? AND action = ? AND attempt = ?
            """,
            _now(),
            status,
            json.dumps(output or {}),
            execution_id,
            stage,
            action,
            attempt,
        )

    async def get_action_history(self, execution_id: str) -> list[ActionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, execution_id, stage, action, attempt, started_at, completed_at, status, output FROM action_history WHERE execution_id = ? ORDER BY id",
            execution_id,
        )
        return [
            ActionRecord(
                id=r["id"],
                execution_id=r["execution_id"],
                stage=r["stage"],
                action=r["action"],
                attempt=r["attempt"],
                started_at=datetime.fromisoformat(r["started_at"]) if r["started_at"] else None,
                completed_at=datetime.fromisoformat(r["completed_at"]) if r["completed_at"] else None,
                status=r["status"],
                output=json.loads(r["output"]) if r["output"] else None,
            )
            for r in rows
        ]
