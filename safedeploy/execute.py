"""Action execution engine for safedeploy pipelines."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from .approvals import ApprovalGate
from .artifacts import REQUIRED_ENTRIES, ArtifactStore, BuildBundle, read_reference
from .capabilities import Capabilities
from .config import SafeDeployConfig
from .contracts import (
    ActionKind,
    ActionResult,
    ActionSpec,
    ActionStatus,
    ShiftPlan,
    utcnow,
)
from .errors import (
    ActionCancelled,
    ActionTimeout,
    AlarmTriggered,
    ConfigurationError,
    ExecutionError,
    PipelineError,
)
from .traffic import Sleep, StateObserver, TrafficShiftController

logger = logging.getLogger(__name__)

Hook = Callable[[], Awaitable[None]]


class ActionContext:
    """Execution-scoped values an action runs with."""

    def __init__(
        self,
        execution_id: str,
        pipeline_id: str,
        stage: str,
        source_revision: str = "",
        source_provider: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_pause: Optional[Hook] = None,
        on_resume: Optional[Hook] = None,
    ) -> None:
        self.execution_id = execution_id
        self.pipeline_id = pipeline_id
        self.stage = stage
        self.source_revision = source_revision
        self.source_provider = source_provider
        self.cancel_event = cancel_event or asyncio.Event()
        self.on_pause = on_pause
        self.on_resume = on_resume


class ActionExecutor:
    """Runs one action: resolves inputs, calls the capability, stores outputs.

    The executor never retries. Failures surface as typed
    :class:`~safedeploy.errors.PipelineError` subclasses.
    """

    def __init__(
        self,
        store: ArtifactStore,
        capabilities: Capabilities,
        approvals: Optional[ApprovalGate] = None,
        config: Optional[SafeDeployConfig] = None,
        sleep: Sleep = asyncio.sleep,
        traffic_observer: Optional[StateObserver] = None,
    ) -> None:
        self._store = store
        self._capabilities = capabilities
        self._approvals = approvals or ApprovalGate()
        self._config = config or SafeDeployConfig()
        self._sleep = sleep
        self._traffic_observer = traffic_observer
        self._handlers = {
            ActionKind.SOURCE: self._run_source,
            ActionKind.BUILD: self._run_build,
            ActionKind.DEPLOY: self._run_deploy,
            ActionKind.INVOKE: self._run_invoke,
            ActionKind.APPROVAL: self._run_approval,
            ActionKind.TRAFFIC_SHIFT: self._run_traffic_shift,
        }

    @property
    def approvals(self) -> ApprovalGate:
        return self._approvals

    async def run(self, action: ActionSpec, context: ActionContext) -> ActionResult:
        """Execute ``action`` once and report its terminal state."""
        result = ActionResult(
            action=action.name,
            kind=action.kind,
            status=ActionStatus.RUNNING,
            attempts=1,
            started_at=utcnow(),
        )
        try:
            result.outputs = await self.execute(action, context)
            result.status = ActionStatus.SUCCEEDED
        except AlarmTriggered as e:
            result.status = ActionStatus.ROLLED_BACK
            result.failure_type = e.failure_type
            result.message = e.message
        except ActionCancelled as e:
            result.status = ActionStatus.CANCELLED
            result.failure_type = e.failure_type
            result.message = e.message
        except PipelineError as e:
            result.status = ActionStatus.FAILED
            result.failure_type = e.failure_type
            result.message = e.message
            result.retryable = e.retryable
        result.completed_at = utcnow()
        return result

    async def execute(
        self, action: ActionSpec, context: ActionContext
    ) -> Dict[str, str]:
        """Execute ``action`` and return output revisions, raising on failure."""
        inputs = await self._resolve_inputs(action, context)
        handler = self._handlers[action.kind]
        logger.info(
            f"Running {action.kind.value} action {action.name} "
            f"for execution {context.execution_id}"
        )
        try:
            if action.timeout_seconds and action.kind not in (
                ActionKind.APPROVAL,
                ActionKind.TRAFFIC_SHIFT,
            ):
                payloads = await asyncio.wait_for(
                    handler(action, inputs, context), timeout=action.timeout_seconds
                )
            else:
                payloads = await handler(action, inputs, context)
        except asyncio.TimeoutError:
            logger.error(f"Action {action.name} timed out after {action.timeout_seconds}s")
            raise ActionTimeout(
                f"Action {action.name} exceeded {action.timeout_seconds}s",
                action=action.name,
            )
        except PipelineError as e:
            e.action = e.action or action.name
            logger.error(f"Action {action.name} failed with {e.failure_type}: {e.message}")
            raise
        except Exception as e:
            logger.error(f"Action {action.name} failed: {e}")
            raise ExecutionError(str(e) or type(e).__name__, action=action.name) from e

        missing = [name for name in action.output_artifacts if name not in payloads]
        if missing:
            raise ExecutionError(
                f"Action {action.name} did not produce declared output "
                f"{', '.join(missing)}",
                action=action.name,
            )

        outputs: Dict[str, str] = {}
        for name in action.output_artifacts:
            outputs[name] = await self._store_output(name, payloads[name], action, context)
        return outputs

    async def _store_output(
        self, name: str, data: bytes, action: ActionSpec, context: ActionContext
    ) -> str:
        # An earlier attempt of the same action in this execution already wrote it.
        if await self._store.exists(name, context.execution_id):
            record = await self._store.resolve(name, context.execution_id)
            if record.producer == action.name:
                logger.info(
                    f"Reusing {name}@{record.revision[:12]} stored by an earlier "
                    f"attempt of {action.name}"
                )
                return record.revision
        return await self._store.put(name, data, context.execution_id, action.name)

    # ------------------------------------------------------------------
    async def _resolve_inputs(
        self, action: ActionSpec, context: ActionContext
    ) -> Dict[str, bytes]:
        inputs: Dict[str, bytes] = {}
        for name in action.input_artifacts:
            record = await self._store.resolve(name, context.execution_id)
            inputs[name] = await self._store.get(name, record.revision)
        return inputs

    def _capability(self, action: ActionSpec, name: str) -> Any:
        capability = getattr(self._capabilities, name)
        if capability is None:
            raise ConfigurationError(
                f"Action {action.name} requires the {name} capability", action=action.name
            )
        return capability

    @staticmethod
    def _setting(action: ActionSpec, key: str) -> Any:
        value = action.configuration.get(key)
        if value in (None, ""):
            raise ConfigurationError(
                f"Action {action.name} is missing configuration '{key}'", action=action.name
            )
        return value

    @staticmethod
    def _fill_outputs(action: ActionSpec, payload: bytes) -> Dict[str, bytes]:
        return {name: payload for name in action.output_artifacts}

    # ------------------------------------------------------------------
    # Handlers
    async def _run_source(
        self, action: ActionSpec, inputs: Dict[str, bytes], context: ActionContext
    ) -> Dict[str, bytes]:
        fetcher = self._capability(action, "source")
        if len(action.output_artifacts) != 1:
            raise ConfigurationError(
                f"Source action {action.name} must declare exactly one output",
                action=action.name,
            )
        provider = action.configuration.get("provider") or context.source_provider
        data = await fetcher.fetch(provider, action.configuration, context.source_revision)
        return self._fill_outputs(action, data)

    async def _run_build(
        self, action: ActionSpec, inputs: Dict[str, bytes], context: ActionContext
    ) -> Dict[str, bytes]:
        build = self._capability(action, "build")
        environment = {
            str(k): str(v)
            for k, v in action.configuration.get("environment_variables", {}).items()
        }
        result = await build.run(inputs, environment)
        if not result.success:
            raise ExecutionError(
                f"Build {action.name} failed" + (f": {result.logs}" if result.logs else ""),
                action=action.name,
            )
        BuildBundle.from_bytes(result.output).require(
            action.configuration.get("required_entries", REQUIRED_ENTRIES)
        )
        return self._fill_outputs(action, result.output)

    async def _run_deploy(
        self, action: ActionSpec, inputs: Dict[str, bytes], context: ActionContext
    ) -> Dict[str, bytes]:
        deploy = self._capability(action, "deploy")
        stack_name = self._setting(action, "stack_name")
        template = read_reference(self._setting(action, "template_path"), inputs)
        parameters: Dict[str, Any] = {}
        if action.configuration.get("template_configuration"):
            raw = read_reference(action.configuration["template_configuration"], inputs)
            try:
                parameters = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ConfigurationError(
                    f"Template configuration of {action.name} is not valid JSON: {e}",
                    action=action.name,
                )
        try:
            body = template.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ConfigurationError(
                f"Template of {action.name} is not UTF-8 text: {e}", action=action.name
            )
        result = await deploy.apply_template(
            stack_name,
            body,
            parameters,
            action.configuration.get("action_mode", "CREATE_UPDATE"),
        )
        return self._fill_outputs(action, json.dumps(result or {}).encode())

    async def _run_invoke(
        self, action: ActionSpec, inputs: Dict[str, bytes], context: ActionContext
    ) -> Dict[str, bytes]:
        invoke = self._capability(action, "invoke")
        result = await invoke.invoke(
            self._setting(action, "function_name"),
            action.configuration.get("user_parameters"),
            inputs,
        )
        return self._fill_outputs(action, json.dumps(result, default=str).encode())

    async def _run_approval(
        self, action: ActionSpec, inputs: Dict[str, bytes], context: ActionContext
    ) -> Dict[str, bytes]:
        approval = self._config.approval
        if context.on_pause is not None:
            await context.on_pause()
        request = await self._approvals.request(
            execution_id=context.execution_id,
            stage=context.stage,
            action=action.name,
            prompt=action.configuration.get("custom_data") or approval.prompt,
            review_link=action.configuration.get("external_entity_link")
            or approval.review_link,
            timeout=action.configuration.get("timeout_seconds", approval.timeout_seconds),
            cancel_event=context.cancel_event,
        )
        if context.on_resume is not None:
            await context.on_resume()
        return self._fill_outputs(action, request.model_dump_json().encode())

    async def _run_traffic_shift(
        self, action: ActionSpec, inputs: Dict[str, bytes], context: ActionContext
    ) -> Dict[str, bytes]:
        controller = TrafficShiftController(
            self._capability(action, "hosting"),
            self._capability(action, "alarms"),
            sleep=self._sleep,
            observer=self._traffic_observer,
        )
        raw_plan = action.configuration.get("shift_plan")
        try:
            plan = ShiftPlan.model_validate(raw_plan) if raw_plan else self._config.traffic.plan()
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid shift plan for {action.name}: {e}", action=action.name
            )
        target = str(self._setting(action, "target_variant")).format(
            source_revision=context.source_revision[:12],
            execution_id=context.execution_id[:8],
        )
        state = await controller.shift(
            self._setting(action, "endpoint_name"),
            target,
            plan,
            cancel_event=context.cancel_event,
        )
        return self._fill_outputs(action, state.model_dump_json().encode())
