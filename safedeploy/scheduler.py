"""Pipeline scheduler: drives executions stage by stage."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, Optional

from .approvals import ApprovalGate
from .artifacts import ArtifactStore, get_artifact_store
from .capabilities import Capabilities
from .config import SafeDeployConfig, load_config
from .contracts import (
    ActionStatus,
    ApprovalDecision,
    ApprovalRequest,
    ExecutionStatus,
    PipelineDefinition,
    PipelineExecution,
    StageResult,
    StageSpec,
    StatusEvent,
    utcnow,
)
from .errors import (
    ActionCancelled,
    ConfigurationError,
    EndpointBusy,
    ExecutionNotFound,
    InvalidTransition,
)
from .execute import ActionContext, ActionExecutor
from .notifications import StatusSink, emit_status
from .persistence import ExecutionRepository, get_repository
from .stage import StageRunner
from .traffic import Sleep, StateObserver

logger = logging.getLogger(__name__)


class EndpointLocks:
    """Execution-level locks keyed by endpoint name."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, str] = {}

    def holder(self, endpoint: str) -> Optional[str]:
        return self._holders.get(endpoint)

    @asynccontextmanager
    async def hold(
        self,
        endpoints: Iterable[str],
        execution_id: str,
        mode: str = "queue",
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[None]:
        """Hold every lock in ``endpoints`` for the duration of the block.

        In ``reject`` mode a busy endpoint raises :class:`EndpointBusy`. In
        ``queue`` mode the caller waits, and gives up with
        :class:`ActionCancelled` if ``cancel_event`` is set while queued.
        """
        acquired = []
        try:
            for endpoint in sorted(endpoints):
                lock = self._locks.setdefault(endpoint, asyncio.Lock())
                if lock.locked():
                    if mode == "reject":
                        raise EndpointBusy(
                            f"Endpoint {endpoint} is being deployed by execution "
                            f"{self._holders.get(endpoint)}"
                        )
                    logger.info(
                        f"Execution {execution_id} queued behind "
                        f"{self._holders.get(endpoint)} for endpoint {endpoint}"
                    )
                if not await self._acquire(lock, cancel_event):
                    logger.info(
                        f"Execution {execution_id} cancelled while queued for endpoint {endpoint}"
                    )
                    raise ActionCancelled(
                        f"Cancelled while waiting for endpoint {endpoint}"
                    )
                acquired.append(endpoint)
                self._holders[endpoint] = execution_id
            yield
        finally:
            for endpoint in reversed(acquired):
                self._holders.pop(endpoint, None)
                self._locks[endpoint].release()

    @staticmethod
    async def _acquire(lock: asyncio.Lock, cancel_event: Optional[asyncio.Event]) -> bool:
        """Wait for ``lock``; return False if ``cancel_event`` fires first."""
        if cancel_event is None:
            await lock.acquire()
            return True
        if cancel_event.is_set():
            return False
        acquire = asyncio.ensure_future(lock.acquire())
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            cancelled.cancel()
            EndpointLocks._abandon(lock, acquire)
            raise
        cancelled.cancel()
        if acquire.done():
            return True
        EndpointLocks._abandon(lock, acquire)
        return False

    @staticmethod
    def _abandon(lock: asyncio.Lock, acquire: asyncio.Future) -> None:
        # A pending acquire that is cancelled never ends up owning the lock.
        if not acquire.done():
            acquire.cancel()
        elif not acquire.cancelled() and acquire.exception() is None:
            lock.release()


class PipelineScheduler:
    """Runs pipeline executions and exposes their control surface.

    Stages run one at a time per execution. The execution record is
    persisted after every stage transition so :meth:`resume` can continue a
    crashed execution from its first incomplete stage. Stages that shift
    production traffic hold the lock of each endpoint they touch.
    """

    def __init__(
        self,
        capabilities: Capabilities,
        store: Optional[ArtifactStore] = None,
        repository: ExecutionRepository | None = None,
        status_sink: Optional[StatusSink] = None,
        approvals: Optional[ApprovalGate] = None,
        config: Optional[SafeDeployConfig] = None,
        sleep: Sleep = asyncio.sleep,
        traffic_observer: Optional[StateObserver] = None,
    ) -> None:
        self._config = config or load_config()
        self._store = store or get_artifact_store(config=self._config)
        self._repository = repository or get_repository(config=self._config)
        self._status_sink = status_sink
        self._approvals = approvals or ApprovalGate()
        self._executor = ActionExecutor(
            self._store,
            capabilities,
            approvals=self._approvals,
            config=self._config,
            sleep=sleep,
            traffic_observer=traffic_observer,
        )
        self._runner = StageRunner(self._executor, status_sink, self._repository)
        self._lock_mode = self._config.scheduler.endpoint_lock_mode
        self._locks = EndpointLocks()
        self._pipelines: Dict[str, PipelineDefinition] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    @property
    def store(self) -> ArtifactStore:
        return self._store

    @property
    def approvals(self) -> ApprovalGate:
        return self._approvals

    @property
    def endpoint_locks(self) -> EndpointLocks:
        return self._locks

    def register_pipeline(self, definition: PipelineDefinition) -> None:
        self._pipelines[definition.pipeline_id] = definition

    def _definition(self, pipeline_id: str) -> PipelineDefinition:
        try:
            return self._pipelines[pipeline_id]
        except KeyError:
            raise ConfigurationError(f"Pipeline {pipeline_id} is not registered")

    # ------------------------------------------------------------------
    # Control surface
    async def start_execution(self, pipeline_id: str, source_revision: str) -> str:
        """Create a new execution record and start driving it in the background."""
        definition = self._definition(pipeline_id)
        execution = PipelineExecution(
            pipeline_id=pipeline_id, source_revision=source_revision
        )
        await self._repository.create_execution(execution)
        logger.info(
            f"Started execution {execution.execution_id} of {pipeline_id} "
            f"at revision {source_revision}"
        )
        await self._emit(execution)
        self._launch(execution, definition)
        return execution.execution_id

    async def run_execution(
        self, pipeline_id: str, source_revision: str
    ) -> PipelineExecution:
        """Start an execution and wait for its terminal state."""
        execution_id = await self.start_execution(pipeline_id, source_revision)
        return await self.wait(execution_id)

    async def wait(self, execution_id: str) -> PipelineExecution:
        task = self._tasks.get(execution_id)
        if task is not None:
            await task
        return await self.get_execution(execution_id)

    async def get_execution(self, execution_id: str) -> PipelineExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(f"Execution {execution_id} not found")
        return execution

    async def list_executions(
        self, pipeline_id: Optional[str] = None
    ) -> list[PipelineExecution]:
        return await self._repository.list_executions(pipeline_id)

    def resolve_approval(
        self,
        execution_id: str,
        decision: ApprovalDecision | str,
        comment: Optional[str] = None,
    ) -> ApprovalRequest:
        """Apply a reviewer's decision to the execution's pending approval."""
        if execution_id not in self._tasks:
            raise ExecutionNotFound(f"Execution {execution_id} is not running")
        return self._approvals.resolve(execution_id, decision, comment)

    async def cancel(self, execution_id: str) -> None:
        """Request cancellation; in-flight actions stop at a safe point."""
        execution = await self.get_execution(execution_id)
        if execution.status.is_terminal:
            raise InvalidTransition(
                f"Execution {execution_id} already {execution.status.value}"
            )
        event = self._cancel_events.get(execution_id)
        if event is not None:
            logger.info(f"Cancellation requested for execution {execution_id}")
            event.set()
            return
        # Not driven by this process: nothing is in flight.
        await self._finish(execution, ExecutionStatus.CANCELLED, reason="Cancelled")

    async def resume(self, execution_id: str) -> None:
        """Continue a persisted execution from its first incomplete stage."""
        execution = await self.get_execution(execution_id)
        if execution.status.is_terminal:
            raise InvalidTransition(
                f"Execution {execution_id} already {execution.status.value}"
            )
        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            raise InvalidTransition(f"Execution {execution_id} is already running")
        definition = self._definition(execution.pipeline_id)
        execution.status = ExecutionStatus.RUNNING
        await self._save(execution)
        logger.info(
            f"Resuming execution {execution_id} at stage index {execution.current_stage_index}"
        )
        self._launch(execution, definition)

    async def shutdown(self) -> None:
        """Stop driving in-flight executions, leaving their records resumable."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Driving
    def _launch(self, execution: PipelineExecution, definition: PipelineDefinition) -> None:
        self._cancel_events[execution.execution_id] = asyncio.Event()
        self._tasks[execution.execution_id] = asyncio.create_task(
            self._drive(execution, definition)
        )

    async def _drive(
        self, execution: PipelineExecution, definition: PipelineDefinition
    ) -> None:
        cancel_event = self._cancel_events[execution.execution_id]
        try:
            while execution.current_stage_index < len(definition.stages):
                if cancel_event.is_set():
                    await self._finish(execution, ExecutionStatus.CANCELLED, reason="Cancelled")
                    return
                stage = definition.stages[execution.current_stage_index]
                result = await self._run_stage(execution, definition, stage, cancel_event)

                if result.status == ActionStatus.SUCCEEDED:
                    execution.current_stage_index += 1
                    await self._save(execution)
                    continue

                if result.status == ActionStatus.CANCELLED:
                    await self._finish(
                        execution,
                        ExecutionStatus.CANCELLED,
                        failed_stage=stage.name,
                        reason="Cancelled",
                    )
                    return

                failed = result.failed_action
                await self._finish(
                    execution,
                    ExecutionStatus.FAILED,
                    failed_stage=stage.name,
                    failed_action=failed.action if failed else None,
                    reason=(
                        f"{failed.failure_type}: {failed.message}"
                        if failed and failed.failure_type
                        else "Stage failed"
                    ),
                )
                return

            await self._finish(execution, ExecutionStatus.SUCCEEDED)
        except Exception as e:
            logger.error(f"Execution {execution.execution_id} crashed: {e}")
            await self._finish(execution, ExecutionStatus.FAILED, reason=f"InternalError: {e}")
            raise
        finally:
            self._cancel_events.pop(execution.execution_id, None)

    async def _run_stage(
        self,
        execution: PipelineExecution,
        definition: PipelineDefinition,
        stage: StageSpec,
        cancel_event: asyncio.Event,
    ) -> StageResult:
        previous = None
        if execution.stage_results and execution.stage_results[-1].stage == stage.name:
            previous = execution.stage_results[-1]

        async def on_pause() -> None:
            execution.status = ExecutionStatus.PAUSED
            await self._save(execution)
            await self._emit(execution, stage.name)

        async def on_resume() -> None:
            if execution.status == ExecutionStatus.PAUSED:
                execution.status = ExecutionStatus.RUNNING
                await self._save(execution)
                await self._emit(execution, stage.name)

        async def on_progress(partial: StageResult) -> None:
            self._record_stage(execution, partial)
            await self._save(execution)

        context = ActionContext(
            execution_id=execution.execution_id,
            pipeline_id=definition.pipeline_id,
            stage=stage.name,
            source_revision=execution.source_revision,
            source_provider=definition.source_provider,
            cancel_event=cancel_event,
            on_pause=on_pause,
            on_resume=on_resume,
        )
        logger.info(f"Execution {execution.execution_id}: entering stage {stage.name}")
        try:
            async with self._locks.hold(
                stage.traffic_shift_endpoints(),
                execution.execution_id,
                self._lock_mode,
                cancel_event=cancel_event,
            ):
                result = await self._runner.run(
                    stage, context, previous=previous, on_progress=on_progress
                )
        except EndpointBusy as e:
            logger.warning(f"Execution {execution.execution_id} rejected: {e.message}")
            result = StageResult(
                stage=stage.name,
                status=ActionStatus.FAILED,
                started_at=utcnow(),
                completed_at=utcnow(),
            )
            execution.reason = f"{e.failure_type}: {e.message}"
        except ActionCancelled as e:
            logger.info(f"Execution {execution.execution_id}: {e.message}")
            result = StageResult(
                stage=stage.name,
                status=ActionStatus.CANCELLED,
                started_at=utcnow(),
                completed_at=utcnow(),
            )
        self._record_stage(execution, result)
        return result

    @staticmethod
    def _record_stage(execution: PipelineExecution, result: StageResult) -> None:
        if execution.stage_results and execution.stage_results[-1].stage == result.stage:
            execution.stage_results[-1] = result
        else:
            execution.stage_results.append(result)

    async def _finish(
        self,
        execution: PipelineExecution,
        status: ExecutionStatus,
        failed_stage: Optional[str] = None,
        failed_action: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        execution.status = status
        execution.failed_stage = failed_stage
        execution.failed_action = failed_action
        execution.reason = execution.reason or reason
        await self._save(execution)
        await self._emit(execution, failed_stage, execution.reason)
        log = logger.info if status == ExecutionStatus.SUCCEEDED else logger.error
        log(
            f"Execution {execution.execution_id} {status.value}"
            + (f" at {failed_stage}: {execution.reason}" if failed_stage else "")
        )

    async def _save(self, execution: PipelineExecution) -> None:
        execution.touch()
        await self._repository.save_execution(execution)

    async def _emit(
        self,
        execution: PipelineExecution,
        stage: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        await emit_status(
            self._status_sink,
            StatusEvent(
                execution_id=execution.execution_id,
                pipeline_id=execution.pipeline_id,
                stage=stage,
                status=execution.status.value,
                detail=detail,
            ),
        )
