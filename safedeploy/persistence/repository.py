"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import PipelineExecution
from .models import ActionRecord


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends."""

    async def create_execution(self, execution: PipelineExecution) -> None:
        """Persist a newly triggered execution."""

    async def save_execution(self, execution: PipelineExecution) -> None:
        """Persist the current state of an execution."""

    async def get_execution(self, execution_id: str) -> PipelineExecution | None:
        """Retrieve the execution by id."""

    async def list_executions(
        self, pipeline_id: Optional[str] = None
    ) -> list[PipelineExecution]:
        """Return persisted executions, oldest first."""

    async def mark_action_started(
        self, execution_id: str, stage: str, action: str, attempt: int = 1
    ) -> None:
        """Record start of an action attempt."""

    async def mark_action_completed(
        self,
        execution_id: str,
        stage: str,
        action: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        """Record completion of an action attempt."""

    async def get_action_history(self, execution_id: str) -> list[ActionRecord]:
        """Return action attempts of an execution in start order."""
