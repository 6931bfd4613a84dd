"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import asyncpg

from ..contracts import PipelineExecution
from .models import ActionRecord
from .repository import ExecutionRepository


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                pipeline_id TEXT NOT NULL,
                status TEXT NOT NULL,
                document JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS action_history (
                id SERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL,
                stage TEXT NOT NULL,
                action TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 1,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                status TEXT,
                output JSONB,
                UNIQUE (execution_id, stage, action, attempt)
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_execution(self, execution: PipelineExecution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO executions (execution_id, pipeline_id, status, document, created_at, updated_at) VALUES ($1, $2, $3, $4, $5, $6)",
                execution.execution_id,
                execution.pipeline_id,
                execution.status.value,
                execution.model_dump_json(),
                execution.created_at,
                execution.updated_at,
            )
        finally:
            await conn.close()

    async def save_execution(self, execution: PipelineExecution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE executions SET status = $1, document = $2, updated_at = $3 WHERE execution_id = $4",
                execution.status.value,
                execution.model_dump_json(),
                execution.updated_at,
                execution.execution_id,
            )
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> PipelineExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM executions WHERE execution_id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return PipelineExecution.model_validate_json(row["document"])

    async def list_executions(
        self, pipeline_id: Optional[str] = None
    ) -> list[PipelineExecution]:
        conn = await self._connect()
        try:
            if pipeline_id is None:
                rows = await conn.fetch(
                    "SELECT document FROM executions ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    "SELECT document FROM executions WHERE pipeline_id = $1 ORDER BY created_at",
                    pipeline_id,
                )
        finally:
            await conn.close()
        return [PipelineExecution.model_validate_json(r["document"]) for r in rows]

    async def mark_action_started(
        self, execution_id: str, stage: str, action: str, attempt: int = 1
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO action_history (execution_id, stage, action, attempt, started_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (execution_id, stage, action, attempt) DO NOTHING
                """,
                execution_id,
                stage,
                action,
                attempt,
                datetime.now(timezone.utc),
            )
        finally:
            await conn.close()

    async def mark_action_completed(
        self,
        execution_id: str,
        stage: str,
        action: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE action_history
                SET completed_at = $1, status = $2, output = $3
                WHERE execution_id = $4 AND stage = $5 AND action = $6 AND attempt = $7
                """,
                datetime.now(timezone.utc),
                status,
                json.dumps(output or {}),
                execution_id,
                stage,
                action,
                attempt,
            )
        finally:
            await conn.close()

    async def get_action_history(self, execution_id: str) -> list[ActionRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT id, execution_id, stage, action, attempt, started_at, completed_at, status, output FROM action_history WHERE execution_id = $1 ORDER BY id",
                execution_id,
            )
        finally:
            await conn.close()
        return [
            ActionRecord(
                id=r["id"],
                execution_id=r["execution_id"],
                stage=r["stage"],
                action=r["action"],
                attempt=r["attempt"],
                started_at=r["started_at"],
                completed_at=r["completed_at"],
                status=r["status"],
                output=json.loads(r["output"]) if r["output"] else None,
            )
            for r in rows
        ]
