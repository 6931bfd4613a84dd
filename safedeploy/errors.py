"""Failure taxonomy for pipeline executions."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for every failure surfaced by the pipeline engine."""

    failure_type = "PipelineError"
    retryable = False

    def __init__(self, message: str, *, action: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.action = action


class ConfigurationError(PipelineError):
    """Bad or missing input artifact, or malformed configuration."""

    failure_type = "ConfigurationError"


class ExecutionError(PipelineError):
    """The underlying task of an action failed."""

    failure_type = "ExecutionError"
    retryable = True


class ActionTimeout(ExecutionError):
    """An action exceeded its declared timeout."""

    failure_type = "Timeout"


class ApprovalRejected(PipelineError):
    failure_type = "ApprovalRejected"


class ApprovalExpired(ApprovalRejected):
    """No decision arrived before the approval deadline."""

    failure_type = "ApprovalExpired"


class AlarmTriggered(PipelineError):
    """Traffic shift rolled back because the endpoint alarm fired."""

    failure_type = "RolledBack"

    def __init__(
        self, message: str, *, endpoint: str, weight: int, action: Optional[str] = None
    ) -> None:
        super().__init__(message, action=action)
        self.endpoint = endpoint
        self.weight = weight


class ActionCancelled(PipelineError):
    failure_type = "Cancelled"


class ArtifactNotFound(ConfigurationError):
    """Requested artifact name or revision does not exist."""

    failure_type = "NotFound"


class ArtifactConflict(ExecutionError):
    """An action tried to write the same artifact twice in one execution."""

    failure_type = "ArtifactConflict"
    retryable = False


class EndpointBusy(PipelineError):
    """Another execution holds the production deployment of this endpoint."""

    failure_type = "EndpointBusy"


class ExecutionNotFound(PipelineError):
    failure_type = "ExecutionNotFound"


class InvalidTransition(PipelineError):
    """Requested operation is not valid for the execution's current status."""

    failure_type = "InvalidTransition"


__all__ = [
    "PipelineError",
    "ConfigurationError",
    "ExecutionError",
    "ActionTimeout",
    "ApprovalRejected",
    "ApprovalExpired",
    "AlarmTriggered",
    "ActionCancelled",
    "ArtifactNotFound",
    "ArtifactConflict",
    "EndpointBusy",
    "ExecutionNotFound",
    "InvalidTransition",
]
