"""Core data contracts for the safedeploy pipeline engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from itertools import groupby
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    RUNNING = "Running"
    PAUSED = "Paused"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.SUCCEEDED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class ActionKind(str, Enum):
    SOURCE = "Source"
    BUILD = "Build"
    DEPLOY = "Deploy"
    INVOKE = "Invoke"
    APPROVAL = "Approval"
    TRAFFIC_SHIFT = "TrafficShift"


class ActionStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"
    CANCELLED = "Cancelled"


class ApprovalStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    EXPIRED = "Expired"


class ApprovalDecision(str, Enum):
    APPROVE = "Approve"
    REJECT = "Reject"


class AlarmState(str, Enum):
    OK = "OK"
    ALARM = "Alarm"


class RetryPolicy(BaseModel):
    """How often the stage runner re-attempts a retryable action failure."""

    max_attempts: int = Field(default=1, ge=1)
    backoff_base: float = Field(default=1.5, gt=0)
    jitter: float = Field(default=0.5, ge=0)


class ActionSpec(BaseModel):
    """Defines one unit of work inside a stage."""

    name: str
    kind: ActionKind
    run_order: int = Field(default=1, ge=1)
    input_artifacts: List[str] = Field(default_factory=list)
    output_artifacts: List[str] = Field(default_factory=list)
    configuration: Dict[str, Any] = Field(default_factory=dict)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _unique_artifacts(self) -> "ActionSpec":
        for label, names in (
            ("input", self.input_artifacts),
            ("output", self.output_artifacts),
        ):
            if len(set(names)) != len(names):
                raise ValueError(f"Duplicate {label} artifact in action {self.name}")
        return self


class ActionGroup(BaseModel):
    """Actions sharing a run-order barrier; executed concurrently."""

    run_order: int
    actions: List[ActionSpec]


class StageSpec(BaseModel):
    """A named phase of the pipeline."""

    name: str
    actions: List[ActionSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_actions(self) -> "StageSpec":
        names = [a.name for a in self.actions]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate action name in stage {self.name}")
        outputs = [o for a in self.actions for o in a.output_artifacts]
        if len(set(outputs)) != len(outputs):
            raise ValueError(f"Duplicate output artifact in stage {self.name}")
        return self

    def groups(self) -> List[ActionGroup]:
        """Return action groups in ascending run-order."""
        ordered = sorted(self.actions, key=lambda a: a.run_order)
        return [
            ActionGroup(run_order=order, actions=list(actions))
            for order, actions in groupby(ordered, key=lambda a: a.run_order)
        ]

    def traffic_shift_endpoints(self) -> List[str]:
        """Endpoint names this stage shifts production traffic on."""
        return sorted(
            {
                a.configuration["endpoint_name"]
                for a in self.actions
                if a.kind == ActionKind.TRAFFIC_SHIFT
                and "endpoint_name" in a.configuration
            }
        )


class PipelineDefinition(BaseModel):
    """Ordered stages plus the source provider resolved when the pipeline was built."""

    pipeline_id: str
    source_provider: str
    stages: List[StageSpec] = Field(default_factory=list)

    def stage_names(self) -> List[str]:
        return [s.name for s in self.stages]


class Artifact(BaseModel):
    """Immutable record of a named payload produced by an action."""

    name: str
    revision: str
    size: int
    producer: str
    execution_id: str
    created_at: datetime = Field(default_factory=utcnow)


class ActionResult(BaseModel):
    action: str
    kind: ActionKind
    status: ActionStatus = ActionStatus.PENDING
    attempts: int = 0
    outputs: Dict[str, str] = Field(default_factory=dict)
    failure_type: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ActionStatus.SUCCEEDED


class StageResult(BaseModel):
    stage: str
    status: ActionStatus = ActionStatus.PENDING
    actions: List[ActionResult] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def failed_action(self) -> Optional[ActionResult]:
        return next((a for a in self.actions if a.status != ActionStatus.SUCCEEDED), None)


class PipelineExecution(BaseModel):
    """Persisted state of one pipeline run."""

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    pipeline_id: str
    source_revision: str
    current_stage_index: int = 0
    status: ExecutionStatus = ExecutionStatus.RUNNING
    stage_results: List[StageResult] = Field(default_factory=list)
    failed_stage: Optional[str] = None
    failed_action: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def completed_stages(self) -> List[str]:
        return [r.stage for r in self.stage_results if r.status == ActionStatus.SUCCEEDED]


class ApprovalRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    stage: str
    action: str
    prompt: str
    review_link: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


class VariantWeight(BaseModel):
    variant: str
    weight: int = Field(ge=0, le=100)


class EndpointState(BaseModel):
    """Traffic split of one hosting endpoint."""

    endpoint: str
    variants: List[VariantWeight] = Field(default_factory=list)
    target_variant: Optional[str] = None
    step_index: int = -1
    alarm: AlarmState = AlarmState.OK

    @model_validator(mode="after")
    def _weights_sum_to_100(self) -> "EndpointState":
        if self.variants and sum(v.weight for v in self.variants) != 100:
            raise ValueError(
                f"Variant weights of endpoint {self.endpoint} must sum to 100"
            )
        return self

    def weight_of(self, variant: str) -> int:
        return next((v.weight for v in self.variants if v.variant == variant), 0)

    def weights(self) -> Dict[str, int]:
        return {v.variant: v.weight for v in self.variants}


class ShiftStep(BaseModel):
    weight: int = Field(gt=0, le=100)
    hold_seconds: float = Field(default=300.0, ge=0)
    alarm_names: List[str] = Field(default_factory=list)


class ShiftPlan(BaseModel):
    """Ordered canary/linear steps ending at full traffic."""

    steps: List[ShiftStep]
    poll_interval_seconds: float = Field(default=60.0, gt=0)

    @field_validator("steps")
    @classmethod
    def _ascending_to_full(cls, steps: List[ShiftStep]) -> List[ShiftStep]:
        if not steps:
            raise ValueError("Shift plan needs at least one step")
        weights = [s.weight for s in steps]
        if any(b <= a for a, b in zip(weights, weights[1:])):
            raise ValueError("Shift plan weights must be strictly ascending")
        if weights[-1] != 100:
            raise ValueError("Shift plan must end at weight 100")
        return steps


class StatusEvent(BaseModel):
    """Structured status notification for external observers."""

    execution_id: str
    pipeline_id: Optional[str] = None
    stage: Optional[str] = None
    action: Optional[str] = None
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json()
