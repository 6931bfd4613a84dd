import asyncio
import json

import pytest

from safedeploy.approvals import ApprovalGate
from safedeploy.artifacts import BuildBundle, InMemoryArtifactStore
from safedeploy.capabilities import (
    Capabilities,
    InMemoryHosting,
    InMemorySourceFetcher,
    RecordingDeployCapability,
    RecordingInvokeCapability,
    ScriptedAlarmReader,
    StaticBuildTask,
    default_build_entries,
)
from safedeploy.contracts import ActionKind, ActionSpec, ActionStatus
from safedeploy.execute import ActionContext, ActionExecutor


async def _no_wait(seconds: float) -> None:
    return None


def _context(**kwargs) -> ActionContext:
    return ActionContext(
        execution_id="ex-1",
        pipeline_id="nyctaxi",
        stage="Test",
        source_revision="abc123def4567890",
        **kwargs,
    )


def _deploy(name="DeployModelDev", **kwargs) -> ActionSpec:
    return ActionSpec(
        name=name,
        kind=ActionKind.DEPLOY,
        input_artifacts=["BuildOutput"],
        configuration={
            "stack_name": "nyctaxi-deploy-dev",
            "template_path": "BuildOutput::deploy-model-dev.yml",
            "template_configuration": "BuildOutput::deploy-model-dev.json",
        },
        **kwargs,
    )


async def _store_with_build() -> InMemoryArtifactStore:
    store = InMemoryArtifactStore()
    await store.put(
        "BuildOutput", BuildBundle.pack(default_build_entries()), "ex-1", "PackageModel"
    )
    return store


@pytest.mark.asyncio
async def test_source_and_build_store_declared_outputs():
    store = InMemoryArtifactStore()
    build = StaticBuildTask()
    executor = ActionExecutor(
        store, Capabilities(source=InMemorySourceFetcher(), build=build)
    )
    context = _context(source_provider="CodeCommit")

    source = await executor.run(
        ActionSpec(name="GitSource", kind=ActionKind.SOURCE, output_artifacts=["ModelSourceOutput"]),
        context,
    )
    assert source.status == ActionStatus.SUCCEEDED
    assert set(source.outputs) == {"ModelSourceOutput"}

    result = await executor.run(
        ActionSpec(
            name="PackageModel",
            kind=ActionKind.BUILD,
            input_artifacts=["ModelSourceOutput"],
            output_artifacts=["BuildOutput"],
            configuration={"environment_variables": {"MODEL_NAME": "nyctaxi"}},
        ),
        context,
    )
    assert result.status == ActionStatus.SUCCEEDED
    assert build.calls == [{"MODEL_NAME": "nyctaxi"}]
    record = await store.resolve("BuildOutput", "ex-1")
    assert record.producer == "PackageModel"
    assert result.outputs["BuildOutput"] == record.revision


@pytest.mark.asyncio
async def test_missing_input_fails_without_calling_capability():
    deploy = RecordingDeployCapability()
    executor = ActionExecutor(InMemoryArtifactStore(), Capabilities(deploy=deploy))

    result = await executor.run(_deploy(), _context())

    assert result.status == ActionStatus.FAILED
    assert result.failure_type == "NotFound"
    assert result.retryable is False
    assert deploy.applied == []


@pytest.mark.asyncio
async def test_deploy_reads_template_and_parameters_from_bundle():
    deploy = RecordingDeployCapability()
    executor = ActionExecutor(await _store_with_build(), Capabilities(deploy=deploy))

    result = await executor.run(_deploy(), _context())

    assert result.status == ActionStatus.SUCCEEDED
    assert deploy.applied == [
        {
            "stack_name": "nyctaxi-deploy-dev",
            "template": "Resources: {}",
            "parameters": {"Parameters": {}},
            "mode": "CREATE_UPDATE",
        }
    ]


@pytest.mark.asyncio
async def test_timeout_is_retryable_failure():
    deploy = RecordingDeployCapability(delay=0.5)
    executor = ActionExecutor(await _store_with_build(), Capabilities(deploy=deploy))

    result = await executor.run(_deploy(timeout_seconds=0.01), _context())

    assert result.status == ActionStatus.FAILED
    assert result.failure_type == "Timeout"
    assert result.retryable is True


@pytest.mark.asyncio
async def test_capability_exception_becomes_execution_error():
    deploy = RecordingDeployCapability(fail_stacks=["nyctaxi-deploy-dev"])
    executor = ActionExecutor(await _store_with_build(), Capabilities(deploy=deploy))

    result = await executor.run(_deploy(), _context())

    assert result.status == ActionStatus.FAILED
    assert result.failure_type == "ExecutionError"
    assert "failed to apply" in result.message
    assert result.retryable is True


@pytest.mark.asyncio
async def test_build_without_experiment_config_is_configuration_error():
    store = InMemoryArtifactStore()
    await store.put("ModelSourceOutput", b"src", "ex-1", "GitSource")
    executor = ActionExecutor(
        store, Capabilities(build=StaticBuildTask(entries={"experiment.json": "{}"}))
    )

    result = await executor.run(
        ActionSpec(
            name="PackageModel",
            kind=ActionKind.BUILD,
            input_artifacts=["ModelSourceOutput"],
            output_artifacts=["BuildOutput"],
        ),
        _context(),
    )

    assert result.status == ActionStatus.FAILED
    assert result.failure_type == "ConfigurationError"
    assert "trial.json" in result.message
    assert not await store.exists("BuildOutput", "ex-1")


@pytest.mark.asyncio
async def test_missing_capability_is_configuration_error():
    executor = ActionExecutor(InMemoryArtifactStore(), Capabilities())
    result = await executor.run(
        ActionSpec(
            name="CreateExperiment",
            kind=ActionKind.INVOKE,
            configuration={"function_name": "nyctaxi-create-experiment"},
        ),
        _context(),
    )
    assert result.status == ActionStatus.FAILED
    assert result.failure_type == "ConfigurationError"


@pytest.mark.asyncio
async def test_invoke_passes_user_parameters():
    invoke = RecordingInvokeCapability(handler=lambda name, params, inputs: {"ok": params})
    executor = ActionExecutor(await _store_with_build(), Capabilities(invoke=invoke))

    result = await executor.run(
        ActionSpec(
            name="CreateExperiment",
            kind=ActionKind.INVOKE,
            input_artifacts=["BuildOutput"],
            output_artifacts=["ExperimentOutput"],
            configuration={
                "function_name": "nyctaxi-create-experiment",
                "user_parameters": "mlops-pipeline-nyctaxi",
            },
        ),
        _context(),
    )

    assert result.status == ActionStatus.SUCCEEDED
    assert invoke.invocations == [("nyctaxi-create-experiment", "mlops-pipeline-nyctaxi")]


@pytest.mark.asyncio
async def test_approval_pauses_and_resumes_context():
    gate = ApprovalGate()
    executor = ActionExecutor(InMemoryArtifactStore(), Capabilities(), approvals=gate)
    calls = []

    async def on_pause():
        calls.append("pause")

    async def on_resume():
        calls.append("resume")

    task = asyncio.create_task(
        executor.run(
            ActionSpec(
                name="ApproveDeploy",
                kind=ActionKind.APPROVAL,
                configuration={"custom_data": "Ship it?"},
            ),
            _context(on_pause=on_pause, on_resume=on_resume),
        )
    )
    while gate.pending("ex-1") is None:
        await asyncio.sleep(0)
    assert calls == ["pause"]
    assert gate.pending("ex-1").prompt == "Ship it?"

    gate.resolve("ex-1", "Approve")
    result = await task
    assert result.status == ActionStatus.SUCCEEDED
    assert calls == ["pause", "resume"]


@pytest.mark.asyncio
async def test_rejected_approval_fails_action():
    gate = ApprovalGate()
    executor = ActionExecutor(InMemoryArtifactStore(), Capabilities(), approvals=gate)
    task = asyncio.create_task(
        executor.run(ActionSpec(name="ApproveDeploy", kind=ActionKind.APPROVAL), _context())
    )
    while gate.pending("ex-1") is None:
        await asyncio.sleep(0)
    gate.resolve("ex-1", "Reject", comment="no")

    result = await task
    assert result.status == ActionStatus.FAILED
    assert result.failure_type == "ApprovalRejected"


@pytest.mark.asyncio
async def test_traffic_shift_formats_target_and_reports_rollback():
    hosting = InMemoryHosting({"nyctaxi-prd": {"nyctaxi-v1": 100}})
    executor = ActionExecutor(
        InMemoryArtifactStore(),
        Capabilities(hosting=hosting, alarms=ScriptedAlarmReader(alarm_on_poll=1)),
        sleep=_no_wait,
    )

    result = await executor.run(
        ActionSpec(
            name="ShiftTraffic",
            kind=ActionKind.TRAFFIC_SHIFT,
            configuration={
                "endpoint_name": "nyctaxi-prd",
                "target_variant": "nyctaxi-{source_revision}",
                "shift_plan": {
                    "steps": [{"weight": 10}, {"weight": 100}],
                    "poll_interval_seconds": 60,
                },
            },
        ),
        _context(),
    )

    assert result.status == ActionStatus.ROLLED_BACK
    assert result.failure_type == "RolledBack"
    final = (await hosting.get_endpoint("nyctaxi-prd")).weights()
    assert final == {"nyctaxi-v1": 100, "nyctaxi-abc123def456": 0}


@pytest.mark.asyncio
async def test_traffic_shift_output_is_endpoint_state():
    hosting = InMemoryHosting({"nyctaxi-prd": {"nyctaxi-v1": 100}})
    store = InMemoryArtifactStore()
    executor = ActionExecutor(
        store,
        Capabilities(hosting=hosting, alarms=ScriptedAlarmReader()),
        sleep=_no_wait,
    )

    result = await executor.run(
        ActionSpec(
            name="ShiftTraffic",
            kind=ActionKind.TRAFFIC_SHIFT,
            output_artifacts=["EndpointState"],
            configuration={"endpoint_name": "nyctaxi-prd", "target_variant": "v2"},
        ),
        _context(),
    )

    assert result.status == ActionStatus.SUCCEEDED
    payload = json.loads(await store.get("EndpointState", result.outputs["EndpointState"]))
    assert payload["variants"] == [{"variant": "v2", "weight": 100}]


@pytest.mark.asyncio
async def test_invalid_shift_plan_is_configuration_error():
    executor = ActionExecutor(
        InMemoryArtifactStore(),
        Capabilities(hosting=InMemoryHosting(), alarms=ScriptedAlarmReader()),
    )
    result = await executor.run(
        ActionSpec(
            name="ShiftTraffic",
            kind=ActionKind.TRAFFIC_SHIFT,
            configuration={
                "endpoint_name": "ep",
                "target_variant": "v2",
                "shift_plan": {"steps": [{"weight": 50}]},
            },
        ),
        _context(),
    )
    assert result.status == ActionStatus.FAILED
    assert result.failure_type == "ConfigurationError"


class PartialOutputExecutor(ActionExecutor):
    """Returns only the first declared output on the first call."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = 0

    async def _run_invoke(self, action, inputs, context):
        self.calls += 1
        payloads = {"Metrics": b'{"rmse": 1.2}'}
        if self.calls > 1:
            payloads["Report"] = b"report"
        return payloads


def _evaluate() -> ActionSpec:
    return ActionSpec(
        name="EvaluateModel",
        kind=ActionKind.INVOKE,
        output_artifacts=["Metrics", "Report"],
        configuration={"function_name": "nyctaxi-evaluate"},
    )


@pytest.mark.asyncio
async def test_incomplete_outputs_store_nothing_and_rerun_succeeds():
    store = InMemoryArtifactStore()
    executor = PartialOutputExecutor(store, Capabilities())

    first = await executor.run(_evaluate(), _context())
    assert first.status == ActionStatus.FAILED
    assert first.retryable is True
    assert "Report" in first.message
    assert not await store.exists("Metrics", "ex-1")

    second = await executor.run(_evaluate(), _context())
    assert second.status == ActionStatus.SUCCEEDED
    assert set(second.outputs) == {"Metrics", "Report"}


@pytest.mark.asyncio
async def test_rerun_reuses_outputs_it_already_stored():
    store = InMemoryArtifactStore()
    fetcher = InMemorySourceFetcher()
    executor = ActionExecutor(store, Capabilities(source=fetcher))
    action = ActionSpec(
        name="GitSource", kind=ActionKind.SOURCE, output_artifacts=["ModelSourceOutput"]
    )
    context = _context(source_provider="GitHub")

    first = await executor.run(action, context)
    again = await executor.run(action, context)

    assert again.status == ActionStatus.SUCCEEDED
    assert again.outputs == first.outputs
    assert len(fetcher.fetched) == 2
    assert len(await store.history("ModelSourceOutput")) == 1


@pytest.mark.asyncio
async def test_output_from_another_action_still_conflicts():
    store = InMemoryArtifactStore()
    await store.put("ModelSourceOutput", b"src", "ex-1", "OtherSource")
    executor = ActionExecutor(store, Capabilities(source=InMemorySourceFetcher()))

    result = await executor.run(
        ActionSpec(
            name="GitSource", kind=ActionKind.SOURCE, output_artifacts=["ModelSourceOutput"]
        ),
        _context(source_provider="GitHub"),
    )

    assert result.status == ActionStatus.FAILED
    assert result.failure_type == "ArtifactConflict"


@pytest.mark.asyncio
async def test_non_utf8_template_is_configuration_error():
    store = InMemoryArtifactStore()
    entries = default_build_entries()
    entries["deploy-model-dev.yml"] = b"\xff\xfe\x00bad"
    await store.put("BuildOutput", BuildBundle.pack(entries), "ex-1", "PackageModel")
    deploy = RecordingDeployCapability()
    executor = ActionExecutor(store, Capabilities(deploy=deploy))

    result = await executor.run(_deploy(), _context())

    assert result.status == ActionStatus.FAILED
    assert result.failure_type == "ConfigurationError"
    assert result.retryable is False
    assert deploy.applied == []
