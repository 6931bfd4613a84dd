from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .contracts import ShiftPlan, ShiftStep


class ModelConfig(BaseModel):
    """Settings of the model being deployed."""

    # Lowercase only: the name is embedded in bucket and stack names.
    name: str = Field(
        default="nyctaxi",
        min_length=1,
        max_length=15,
        pattern=r"^[a-z0-9](-*[a-z0-9])*$",
    )
    artifact_bucket: Optional[str] = None
    data_bucket: Optional[str] = None
    role_arn: Optional[str] = None
    kms_key_id: Optional[str] = None
    endpoint_name: Optional[str] = None

    @property
    def resolved_artifact_bucket(self) -> str:
        return self.artifact_bucket or f"mlops-{self.name}-artifact"

    @property
    def resolved_endpoint_name(self) -> str:
        return self.endpoint_name or f"{self.name}-prd"


class SourceConfig(BaseModel):
    """Upstream repository settings."""

    github_user: str = "aws-samples"
    github_repo: str = "amazon-sagemaker-safe-deployment-pipeline"
    github_branch: str = "master"
    github_token: Optional[str] = None


class TrafficShiftConfig(BaseModel):
    """Default canary plan used when an action does not declare its own."""

    poll_interval_seconds: float = 60.0
    steps: List[ShiftStep] = Field(
        default_factory=lambda: [
            ShiftStep(weight=10, hold_seconds=300),
            ShiftStep(weight=50, hold_seconds=300),
            ShiftStep(weight=100, hold_seconds=300),
        ]
    )

    def plan(self) -> ShiftPlan:
        return ShiftPlan(
            steps=self.steps, poll_interval_seconds=self.poll_interval_seconds
        )


class ApprovalConfig(BaseModel):
    timeout_seconds: float = 7 * 24 * 3600
    prompt: str = "Shall this model be put into production?"
    review_link: Optional[str] = None


class SchedulerConfig(BaseModel):
    endpoint_lock_mode: Literal["queue", "reject"] = "queue"


class ArtifactStoreConfig(BaseModel):
    backend: Literal["inmemory", "filesystem"] = "inmemory"
    path: str = ".safedeploy/artifacts"


class RedisConfig(BaseModel):
    """Configuration for the Redis status sink."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    channel: str = "safedeploy:status"


class StatusSinkConfig(BaseModel):
    backend: Literal["logging", "redis"] = "logging"
    redis: RedisConfig = RedisConfig()


class SafeDeployConfig(BaseModel):
    """Top-level configuration model."""

    model: ModelConfig = ModelConfig()
    source: SourceConfig = SourceConfig()
    traffic: TrafficShiftConfig = TrafficShiftConfig()
    approval: ApprovalConfig = ApprovalConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    artifact_store: ArtifactStoreConfig = ArtifactStoreConfig()
    status_sink: StatusSinkConfig = StatusSinkConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> SafeDeployConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SAFEDEPLOY_CONFIG env
            variable or 'safedeploy.yaml' in the current directory.
    """

    config_path = path or os.getenv("SAFEDEPLOY_CONFIG", "safedeploy.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SafeDeployConfig(**data)
    else:
        config = SafeDeployConfig()

    env_db_url = os.getenv("SAFEDEPLOY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_token = os.getenv("GITHUB_TOKEN")
    if env_token is not None:
        config.source.github_token = env_token
    return config
