"""In-process collaborators for tests and local runs."""

from __future__ import annotations

import asyncio
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from ..artifacts.bundle import BuildBundle
from ..contracts import AlarmState, EndpointState, VariantWeight
from .base import (
    AlarmReader,
    BuildResult,
    BuildTask,
    DeployCapability,
    HostingCapability,
    InvokeCapability,
    SourceFetcher,
)


class InMemorySourceFetcher(SourceFetcher):
    """Serve source bundles from a dict keyed by revision."""

    def __init__(self, bundles: Optional[Dict[str, bytes]] = None) -> None:
        self.bundles = bundles or {}
        self.fetched: List[Tuple[str, str]] = []

    async def fetch(
        self, provider: str, configuration: Mapping[str, Any], source_revision: str
    ) -> bytes:
        self.fetched.append((provider, source_revision))
        if source_revision in self.bundles:
            return self.bundles[source_revision]
        return f"{provider}:{configuration.get('object_key', 'repo')}@{source_revision}".encode()


class StaticBuildTask(BuildTask):
    """Return a fixed build bundle, or fail when ``success`` is false."""

    def __init__(
        self,
        entries: Optional[Mapping[str, bytes | str]] = None,
        success: bool = True,
    ) -> None:
        self.entries = dict(entries) if entries is not None else default_build_entries()
        self.success = success
        self.calls: List[Dict[str, str]] = []

    async def run(
        self, inputs: Mapping[str, bytes], environment: Mapping[str, str]
    ) -> BuildResult:
        self.calls.append(dict(environment))
        if not self.success:
            return BuildResult(success=False, logs="build failed")
        return BuildResult(success=True, output=BuildBundle.pack(self.entries))


def default_build_entries(model_name: str = "nyctaxi") -> Dict[str, str]:
    """Build output layout expected by the standard pipeline stages."""
    entries: Dict[str, str] = {
        "experiment.json": f'{{"ExperimentName": "mlops-{model_name}"}}',
        "trial.json": f'{{"TrialName": "mlops-{model_name}-trial"}}',
        "template-custom-resource.yml": "Resources: {}",
    }
    for stem in (
        "training-job",
        "suggest-baseline",
        "deploy-model-dev",
        "template-model-prd",
    ):
        entries[f"{stem}.yml"] = "Resources: {}"
        entries[f"{stem}.json"] = '{"Parameters": {}}'
    return entries


class RecordingDeployCapability(DeployCapability):
    """Record applied templates; optionally fail chosen stacks."""

    def __init__(
        self, fail_stacks: Iterable[str] = (), delay: float = 0.0
    ) -> None:
        self.fail_stacks = set(fail_stacks)
        self.delay = delay
        self.applied: List[Dict[str, Any]] = []

    async def apply_template(
        self,
        stack_name: str,
        template: str,
        parameters: Mapping[str, Any],
        mode: str,
    ) -> Dict[str, Any]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if stack_name in self.fail_stacks:
            raise RuntimeError(f"Stack {stack_name} failed to apply")
        self.applied.append(
            {
                "stack_name": stack_name,
                "template": template,
                "parameters": dict(parameters),
                "mode": mode,
            }
        )
        return {"StackName": stack_name}


class RecordingInvokeCapability(InvokeCapability):
    def __init__(self, handler: Optional[Callable[..., Any]] = None) -> None:
        self.handler = handler
        self.invocations: List[Tuple[str, Any]] = []

    async def invoke(
        self,
        function_name: str,
        user_parameters: Any,
        inputs: Mapping[str, bytes],
    ) -> Any:
        self.invocations.append((function_name, user_parameters))
        if self.handler is not None:
            return self.handler(function_name, user_parameters, inputs)
        return None


class InMemoryHosting(HostingCapability):
    """Endpoint weights held in memory, with every applied split recorded."""

    def __init__(self, endpoints: Optional[Dict[str, Dict[str, int]]] = None) -> None:
        self._endpoints: Dict[str, EndpointState] = {}
        self.history: List[EndpointState] = []
        for name, weights in (endpoints or {}).items():
            self._endpoints[name] = EndpointState(
                endpoint=name,
                variants=[VariantWeight(variant=v, weight=w) for v, w in weights.items()],
            )

    async def get_endpoint(self, endpoint: str) -> EndpointState:
        state = self._endpoints.get(endpoint) or EndpointState(endpoint=endpoint)
        return state.model_copy(deep=True)

    async def update_weights(
        self, endpoint: str, weights: Mapping[str, int]
    ) -> EndpointState:
        current = self._endpoints.get(endpoint) or EndpointState(endpoint=endpoint)
        merged = current.weights()
        merged.update(weights)
        state = EndpointState(
            endpoint=endpoint,
            variants=[VariantWeight(variant=v, weight=w) for v, w in merged.items()],
        )
        self._endpoints[endpoint] = state
        self.history.append(state.model_copy(deep=True))
        return state.model_copy(deep=True)

    async def retire_variant(self, endpoint: str, variant: str) -> EndpointState:
        current = self._endpoints.get(endpoint) or EndpointState(endpoint=endpoint)
        state = EndpointState(
            endpoint=endpoint,
            variants=[v for v in current.variants if v.variant != variant],
        )
        self._endpoints[endpoint] = state
        self.history.append(state.model_copy(deep=True))
        return state.model_copy(deep=True)


class ScriptedAlarmReader(AlarmReader):
    """Report OK until the configured poll number, then Alarm.

    ``alarm_on_poll`` is 1-based; ``None`` keeps the alarm quiet forever.
    """

    def __init__(self, alarm_on_poll: Optional[int] = None) -> None:
        self.alarm_on_poll = alarm_on_poll
        self.polls = 0

    async def get_alarm_state(
        self, endpoint: str, alarm_names: Sequence[str] = ()
    ) -> AlarmState:
        self.polls += 1
        if self.alarm_on_poll is not None and self.polls >= self.alarm_on_poll:
            return AlarmState.ALARM
        return AlarmState.OK
