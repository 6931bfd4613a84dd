"""In-memory implementation of the execution repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..contracts import PipelineExecution
from .models import ActionRecord
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, PipelineExecution] = {}
        self._actions: Dict[str, List[ActionRecord]] = {}
        self._record_id = 0

    # ------------------------------------------------------------------
    async def create_execution(self, execution: PipelineExecution) -> None:
        self._executions[execution.execution_id] = execution.model_copy(deep=True)
        self._actions.setdefault(execution.execution_id, [])

    async def save_execution(self, execution: PipelineExecution) -> None:
        self._executions[execution.execution_id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> PipelineExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self, pipeline_id: Optional[str] = None
    ) -> list[PipelineExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if pipeline_id is None or e.pipeline_id == pipeline_id
        ]

    async def mark_action_started(
        self, execution_id: str, stage: str, action: str, attempt: int = 1
    ) -> None:
        records = self._actions.setdefault(execution_id, [])
        # ignore duplicate starts for the same attempt
        for record in records:
            if record.stage == stage and record.action == action and record.attempt == attempt:
                return
        self._record_id += 1
        records.append(
            ActionRecord(
                id=self._record_id,
                execution_id=execution_id,
                stage=stage,
                action=action,
                attempt=attempt,
                started_at=datetime.now(timezone.utc),
            )
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
        for record in self._actions.get(execution_id, []):
            if (
                record.stage == stage
                and record.action == action
                and record.attempt == attempt
                and record.completed_at is None
            ):
                record.completed_at = datetime.now(timezone.utc)
                record.status = status
                record.output = output or {}
                break

    async def get_action_history(self, execution_id: str) -> list[ActionRecord]:
        return list(self._actions.get(execution_id, []))
