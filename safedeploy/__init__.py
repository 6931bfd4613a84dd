"""Safedeploy: staged model deployment pipelines with gated, reversible rollout."""

from .approvals import ApprovalGate
from .artifacts import ArtifactStore, get_artifact_store
from .capabilities import Capabilities
from .config import SafeDeployConfig, load_config
from .contracts import (
    ActionKind,
    ActionSpec,
    ApprovalDecision,
    ExecutionStatus,
    PipelineDefinition,
    PipelineExecution,
    ShiftPlan,
    ShiftStep,
    StageSpec,
)
from .dispatch import (
    PipelineBuilder,
    build_safe_deployment_pipeline,
    load_pipeline_definition,
)
from .execute import ActionContext, ActionExecutor
from .notifications import get_status_sink
from .persistence import get_repository
from .scheduler import PipelineScheduler
from .stage import StageRunner
from .traffic import TrafficShiftController

__version__ = "0.1.0"
__all__ = [
    "ActionContext",
    "ActionExecutor",
    "ActionKind",
    "ActionSpec",
    "ApprovalDecision",
    "ApprovalGate",
    "ArtifactStore",
    "Capabilities",
    "ExecutionStatus",
    "PipelineBuilder",
    "PipelineDefinition",
    "PipelineExecution",
    "PipelineScheduler",
    "SafeDeployConfig",
    "ShiftPlan",
    "ShiftStep",
    "StageRunner",
    "StageSpec",
    "TrafficShiftController",
    "build_safe_deployment_pipeline",
    "get_artifact_store",
    "get_repository",
    "get_status_sink",
    "load_config",
    "load_pipeline_definition",
]
