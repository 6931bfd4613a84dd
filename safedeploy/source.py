"""Selection of the upstream source provider feeding the pipeline."""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Optional

from .config import ModelConfig, SourceConfig
from .contracts import ActionKind, ActionSpec
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

MODEL_SOURCE_OUTPUT = "ModelSourceOutput"
DATA_SOURCE_OUTPUT = "DataSourceOutput"

_CLASSIC_TOKEN = re.compile(r"^[0-9a-f]{40}$")
_PREFIXED_TOKEN = re.compile(r"^(ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{36,251}$")
_FINE_GRAINED_TOKEN = re.compile(r"^github_pat_[A-Za-z0-9_]{22,255}$")


class SourceProvider(str, Enum):
    """Where model source is pulled from."""

    CODECOMMIT = "CodeCommit"
    GITHUB = "GitHub"
    S3 = "S3"


def is_valid_token(token: str) -> bool:
    return bool(
        _CLASSIC_TOKEN.match(token)
        or _PREFIXED_TOKEN.match(token)
        or _FINE_GRAINED_TOKEN.match(token)
    )


def select_source_provider(token: Optional[str]) -> SourceProvider:
    """Resolve the model source provider from the external token.

    An empty token selects the internal repository. A present token must be
    well formed, otherwise the pipeline definition is rejected.
    """
    if token is None or token.strip() == "":
        return SourceProvider.CODECOMMIT
    if not is_valid_token(token.strip()):
        raise ConfigurationError("External repository token is malformed")
    return SourceProvider.GITHUB


def build_source_action(source: SourceConfig) -> ActionSpec:
    """Return the model source action for the resolved provider."""
    provider = select_source_provider(source.github_token)
    if provider == SourceProvider.CODECOMMIT:
        configuration = {
            "provider": provider.value,
            "repository_name": source.github_repo,
            "branch_name": source.github_branch,
            "poll_for_changes": True,
        }
    else:
        configuration = {
            "provider": provider.value,
            "owner": source.github_user,
            "repo": source.github_repo,
            "branch": source.github_branch,
            "oauth_token": source.github_token.strip(),
        }
    logger.info(f"Model source resolved to {provider.value} for {source.github_repo}")
    return ActionSpec(
        name="GitSource",
        kind=ActionKind.SOURCE,
        output_artifacts=[MODEL_SOURCE_OUTPUT],
        configuration=configuration,
    )


def build_data_source_action(model: ModelConfig) -> ActionSpec:
    return ActionSpec(
        name="DataSource",
        kind=ActionKind.SOURCE,
        output_artifacts=[DATA_SOURCE_OUTPUT],
        configuration={
            "provider": SourceProvider.S3.value,
            "bucket": model.resolved_artifact_bucket,
            "object_key": f"{model.name}/data-source.zip",
        },
    )
