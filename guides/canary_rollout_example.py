"""Run the standard pipeline end to end with in-memory collaborators."""

import asyncio
import logging

from safedeploy import (
    Capabilities,
    ExecutionStatus,
    PipelineScheduler,
    SafeDeployConfig,
    build_safe_deployment_pipeline,
)
from safedeploy.artifacts import InMemoryArtifactStore
from safedeploy.capabilities import (
    InMemoryHosting,
    InMemorySourceFetcher,
    RecordingDeployCapability,
    RecordingInvokeCapability,
    ScriptedAlarmReader,
    StaticBuildTask,
)
from safedeploy.notifications import LoggingStatusSink
from safedeploy.persistence import InMemoryExecutionRepository


async def no_wait(seconds: float) -> None:
    await asyncio.sleep(0)


async def main(alarm_on_poll=None):
    """Deploy revision ``abc123`` and approve it once the dev stage pauses."""
    config = SafeDeployConfig()
    hosting = InMemoryHosting({"nyctaxi-prd": {"nyctaxi-v1": 100}})
    capabilities = Capabilities(
        source=InMemorySourceFetcher(),
        build=StaticBuildTask(),
        deploy=RecordingDeployCapability(),
        invoke=RecordingInvokeCapability(),
        hosting=hosting,
        alarms=ScriptedAlarmReader(alarm_on_poll=alarm_on_poll),
    )
    scheduler = PipelineScheduler(
        capabilities,
        store=InMemoryArtifactStore(),
        repository=InMemoryExecutionRepository(),
        status_sink=LoggingStatusSink(),
        config=config,
        sleep=no_wait,
    )
    scheduler.register_pipeline(build_safe_deployment_pipeline(config))

    execution_id = await scheduler.start_execution("nyctaxi", "abc123")
    print(f"📋 Execution: {execution_id}")

    # Wait until the DeployDev stage asks for a decision
    while scheduler.approvals.pending(execution_id) is None:
        await asyncio.sleep(0.01)
    execution = await scheduler.get_execution(execution_id)
    print(f"⏸️  {execution.status.value}: {scheduler.approvals.pending(execution_id).prompt}")
    scheduler.resolve_approval(execution_id, "Approve", comment="Metrics look good")

    execution = await scheduler.wait(execution_id)
    if execution.status == ExecutionStatus.SUCCEEDED:
        print("✅ Rollout complete")
    else:
        print(f"❌ {execution.status.value} at {execution.failed_stage}: {execution.reason}")
    for state in hosting.history:
        print(f"🔀 {state.weights()}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
