"""Capability objects for external collaborators."""

from __future__ import annotations

from .base import (
    AlarmReader,
    BuildResult,
    BuildTask,
    Capabilities,
    DeployCapability,
    HostingCapability,
    InvokeCapability,
    SourceFetcher,
)
from .inmemory import (
    InMemoryHosting,
    InMemorySourceFetcher,
    RecordingDeployCapability,
    RecordingInvokeCapability,
    ScriptedAlarmReader,
    StaticBuildTask,
    default_build_entries,
)

__all__ = [
    "AlarmReader",
    "BuildResult",
    "BuildTask",
    "Capabilities",
    "DeployCapability",
    "HostingCapability",
    "InvokeCapability",
    "SourceFetcher",
    "InMemoryHosting",
    "InMemorySourceFetcher",
    "RecordingDeployCapability",
    "RecordingInvokeCapability",
    "ScriptedAlarmReader",
    "StaticBuildTask",
    "default_build_entries",
]
