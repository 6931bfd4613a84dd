"""Contracts of the external collaborators reached by actions.

Actions receive these as explicit capability objects instead of relying on
ambient credentials: each executor only holds the capabilities it was given.
"""

from __future__ import annotations

import abc
from typing import Any, Dict, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from ..contracts import AlarmState, EndpointState


class BuildResult(BaseModel):
    """Outcome of the opaque build task."""

    success: bool
    output: bytes = b""
    logs: Optional[str] = None


class SourceFetcher(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    async def fetch(
        self, provider: str, configuration: Mapping[str, Any], source_revision: str
    ) -> bytes:
        """Return the source bundle for ``source_revision``."""
        raise NotImplementedError


class BuildTask(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    async def run(
        self, inputs: Mapping[str, bytes], environment: Mapping[str, str]
    ) -> BuildResult:
        """Build the artifact bundle from ``inputs``."""
        raise NotImplementedError


class DeployCapability(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    async def apply_template(
        self,
        stack_name: str,
        template: str,
        parameters: Mapping[str, Any],
        mode: str,
    ) -> Dict[str, Any]:
        """Apply an infrastructure template and return its outputs."""
        raise NotImplementedError


class InvokeCapability(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    async def invoke(
        self,
        function_name: str,
        user_parameters: Any,
        inputs: Mapping[str, bytes],
    ) -> Any:
        """Invoke a function with the action's input artifacts."""
        raise NotImplementedError


class HostingCapability(metaclass=abc.ABCMeta):
    """Serving substrate able to route weighted traffic to model variants."""

    @abc.abstractmethod
    async def get_endpoint(self, endpoint: str) -> EndpointState:
        raise NotImplementedError

    @abc.abstractmethod
    async def update_weights(
        self, endpoint: str, weights: Mapping[str, int]
    ) -> EndpointState:
        """Atomically replace the variant weights of ``endpoint``.

        Variants absent from ``weights`` are left untouched only if they
        carry weight 0; the resulting split must sum to 100.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def retire_variant(self, endpoint: str, variant: str) -> EndpointState:
        """Remove a variant that no longer receives traffic."""
        raise NotImplementedError


class AlarmReader(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    async def get_alarm_state(
        self, endpoint: str, alarm_names: Sequence[str] = ()
    ) -> AlarmState:
        """Return Alarm when any watched health signal of ``endpoint`` fires."""
        raise NotImplementedError


class Capabilities(BaseModel):
    """Capability objects handed to the action executor."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    source: Optional[SourceFetcher] = None
    build: Optional[BuildTask] = None
    deploy: Optional[DeployCapability] = None
    invoke: Optional[InvokeCapability] = None
    hosting: Optional[HostingCapability] = None
    alarms: Optional[AlarmReader] = None
