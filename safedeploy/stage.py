"""Execution of one stage: run-order groups behind barriers."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .contracts import (
    ActionResult,
    ActionSpec,
    ActionStatus,
    StageResult,
    StageSpec,
    StatusEvent,
    utcnow,
)
from .execute import ActionContext, ActionExecutor
from .notifications import StatusSink, emit_status
from .persistence import ExecutionRepository
from .utils import retry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[StageResult], Awaitable[None]]


class StageRunner:
    """Runs the action groups of a stage in ascending run-order.

    Actions of one group run concurrently and the next group starts only
    when every action of the current one is terminal. The first failing
    group aborts the stage. Retrying a failed action is decided here from
    the action's retry policy, never across stage boundaries.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        status_sink: Optional[StatusSink] = None,
        repository: ExecutionRepository | None = None,
    ) -> None:
        self._executor = executor
        self._status_sink = status_sink
        self._repository = repository

    async def run(
        self,
        stage: StageSpec,
        context: ActionContext,
        previous: Optional[StageResult] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StageResult:
        """Run ``stage``; actions that succeeded in ``previous`` are not re-run."""
        done = {
            a.action: a
            for a in (previous.actions if previous else [])
            if a.status == ActionStatus.SUCCEEDED
        }
        result = StageResult(
            stage=stage.name,
            status=ActionStatus.RUNNING,
            actions=list(done.values()),
            started_at=(previous.started_at if previous else None) or utcnow(),
        )
        await self._emit(context, None, ActionStatus.RUNNING.value)

        for group in stage.groups():
            if context.cancel_event.is_set():
                result.status = ActionStatus.CANCELLED
                break
            pending = [a for a in group.actions if a.name not in done]
            if not pending:
                continue
            logger.info(
                f"Stage {stage.name}: run-order {group.run_order} "
                f"starting {', '.join(a.name for a in pending)}"
            )

            async def settle(action: ActionSpec) -> ActionResult:
                outcome = await self._run_action(action, context)
                result.actions.append(outcome)
                if on_progress is not None:
                    await on_progress(result)
                return outcome

            outcomes = await asyncio.gather(*(settle(action) for action in pending))
            # Keep declaration order once the whole group has settled.
            settled = {o.action for o in outcomes}
            result.actions = [a for a in result.actions if a.action not in settled]
            result.actions.extend(outcomes)

            failed = [o for o in outcomes if o.status != ActionStatus.SUCCEEDED]
            if failed:
                if all(o.status == ActionStatus.CANCELLED for o in failed):
                    result.status = ActionStatus.CANCELLED
                else:
                    result.status = ActionStatus.FAILED
                logger.error(
                    f"Stage {stage.name} aborted after run-order {group.run_order}: "
                    + ", ".join(f"{o.action}={o.status.value}" for o in failed)
                )
                break
        else:
            result.status = ActionStatus.SUCCEEDED

        result.completed_at = utcnow()
        await self._emit(context, None, result.status.value)
        return result

    async def _run_action(self, action: ActionSpec, context: ActionContext) -> ActionResult:
        attempt = 0
        started_at = utcnow()
        while True:
            attempt += 1
            await self._emit(
                context,
                action.name,
                ActionStatus.RUNNING.value,
                f"attempt {attempt}" if attempt > 1 else None,
            )
            if self._repository is not None:
                await self._repository.mark_action_started(
                    context.execution_id, context.stage, action.name, attempt
                )
            outcome = await self._executor.run(action, context)
            outcome.attempts = attempt
            outcome.started_at = started_at
            if self._repository is not None:
                await self._repository.mark_action_completed(
                    context.execution_id,
                    context.stage,
                    action.name,
                    status=outcome.status.value,
                    output={"outputs": outcome.outputs, "message": outcome.message},
                    attempt=attempt,
                )
            await self._emit(context, action.name, outcome.status.value, outcome.message)

            if (
                outcome.status == ActionStatus.SUCCEEDED
                or not outcome.retryable
                or attempt >= action.retry.max_attempts
                or context.cancel_event.is_set()
            ):
                return outcome
            logger.warning(
                f"Action {action.name} failed on attempt {attempt}/"
                f"{action.retry.max_attempts}; retrying: {outcome.message}"
            )
            await retry.schedule_retry(attempt, action.retry)

    async def _emit(
        self,
        context: ActionContext,
        action: Optional[str],
        status: str,
        detail: Optional[str] = None,
    ) -> None:
        await emit_status(
            self._status_sink,
            StatusEvent(
                execution_id=context.execution_id,
                pipeline_id=context.pipeline_id,
                stage=context.stage,
                action=action,
                status=status,
                detail=detail,
            ),
        )
