"""Construction and validation of pipeline definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Set

import yaml
from pydantic import ValidationError

from .config import SafeDeployConfig
from .contracts import ActionKind, ActionSpec, PipelineDefinition, StageSpec
from .errors import ConfigurationError
from .source import (
    DATA_SOURCE_OUTPUT,
    MODEL_SOURCE_OUTPUT,
    SourceProvider,
    build_data_source_action,
    build_source_action,
    select_source_provider,
)

logger = logging.getLogger(__name__)

BUILD_OUTPUT = "BuildOutput"
PRODUCTION_OUTPUT = "ModelDeployPrdOutput"


class PipelineBuilder:
    """Collects stages and actions, then validates them into a definition."""

    def __init__(
        self,
        pipeline_id: str,
        source_provider: SourceProvider | str = SourceProvider.CODECOMMIT,
    ) -> None:
        self.pipeline_id = pipeline_id
        self.source_provider = SourceProvider(source_provider)
        self._stages: Dict[str, List[ActionSpec]] = {}

    def add_stage(self, name: str) -> "PipelineBuilder":
        if name in self._stages:
            raise ConfigurationError(f"Stage {name} defined twice")
        self._stages[name] = []
        return self

    def add_action(self, stage: str, action: ActionSpec) -> ActionSpec:
        """Append ``action`` to ``stage``, creating the stage on first use."""
        self._stages.setdefault(stage, []).append(action)
        return action

    def build(self) -> PipelineDefinition:
        try:
            definition = PipelineDefinition(
                pipeline_id=self.pipeline_id,
                source_provider=self.source_provider.value,
                stages=[
                    StageSpec(name=name, actions=actions)
                    for name, actions in self._stages.items()
                ],
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid pipeline {self.pipeline_id}: {e}")
        validate_definition(definition)
        return definition


def validate_definition(definition: PipelineDefinition) -> None:
    """Check the artifact graph of ``definition``.

    Every declared input must be produced by an earlier stage or by an
    earlier run-order group of the same stage, and no artifact name may be
    produced twice.
    """
    if not definition.stages:
        raise ConfigurationError(f"Pipeline {definition.pipeline_id} has no stages")
    names = definition.stage_names()
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Pipeline {definition.pipeline_id} repeats a stage name")

    produced: Set[str] = set()
    for stage in definition.stages:
        if not stage.actions:
            raise ConfigurationError(f"Stage {stage.name} has no actions")
        for group in stage.groups():
            group_outputs: Set[str] = set()
            for action in group.actions:
                missing = [i for i in action.input_artifacts if i not in produced]
                if missing:
                    raise ConfigurationError(
                        f"Action {stage.name}/{action.name} consumes "
                        f"{', '.join(missing)} before it is produced",
                        action=action.name,
                    )
                for output in action.output_artifacts:
                    if output in produced or output in group_outputs:
                        raise ConfigurationError(
                            f"Artifact {output} is produced more than once",
                            action=action.name,
                        )
                    group_outputs.add(output)
            produced |= group_outputs


def load_pipeline_definition(path: str | Path) -> PipelineDefinition:
    """Load and validate a pipeline definition from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    try:
        definition = PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pipeline definition {path}: {e}")
    try:
        SourceProvider(definition.source_provider)
    except ValueError:
        raise ConfigurationError(
            f"Unknown source provider {definition.source_provider!r} in {path}"
        )
    validate_definition(definition)
    return definition


def build_safe_deployment_pipeline(
    config: Optional[SafeDeployConfig] = None,
) -> PipelineDefinition:
    """Build the standard Source → Build → Train → DeployDev → DeployPrd pipeline.

    The model source provider is chosen here, once, from the configured
    external token.
    """
    config = config or SafeDeployConfig()
    model = config.model
    name = model.name
    provider = select_source_provider(config.source.github_token)

    builder = PipelineBuilder(name, provider)

    builder.add_stage("Source")
    builder.add_action("Source", build_source_action(config.source))
    builder.add_action("Source", build_data_source_action(model))

    builder.add_stage("Build")
    builder.add_action(
        "Build",
        ActionSpec(
            name="PackageModel",
            kind=ActionKind.BUILD,
            input_artifacts=[MODEL_SOURCE_OUTPUT, DATA_SOURCE_OUTPUT],
            output_artifacts=[BUILD_OUTPUT],
            timeout_seconds=30 * 60,
            configuration={
                "primary_source": MODEL_SOURCE_OUTPUT,
                "environment_variables": {
                    "DATA_BUCKET": model.data_bucket or "",
                    "MODEL_NAME": name,
                    "ROLE_ARN": model.role_arn or "",
                    "ARTIFACT_BUCKET": model.resolved_artifact_bucket,
                    "KMS_KEY_ID": model.kms_key_id or "",
                },
            },
        ),
    )
    builder.add_action(
        "Build",
        _deploy_action(
            "SetupTraining",
            run_order=2,
            stack_name="sagemaker-custom-resource",
            template="template-custom-resource",
            with_configuration=False,
        ),
    )

    builder.add_stage("Train")
    builder.add_action(
        "Train",
        ActionSpec(
            name="CreateExperiment",
            kind=ActionKind.INVOKE,
            input_artifacts=[BUILD_OUTPUT],
            timeout_seconds=60,
            configuration={
                "function_name": f"{name}-create-experiment",
                "user_parameters": f"mlops-pipeline-{name}",
            },
        ),
    )
    builder.add_action(
        "Train",
        _deploy_action("TrainModel", 2, f"{name}-training-job", "training-job"),
    )
    builder.add_action(
        "Train",
        _deploy_action("SuggestBaseline", 2, f"{name}-suggest-baseline", "suggest-baseline"),
    )

    builder.add_stage("DeployDev")
    builder.add_action(
        "DeployDev",
        _deploy_action("DeployModelDev", 1, f"{name}-deploy-dev", "deploy-model-dev"),
    )
    builder.add_action(
        "DeployDev",
        ActionSpec(
            name="ApproveDeploy",
            kind=ActionKind.APPROVAL,
            run_order=2,
            configuration={
                "custom_data": config.approval.prompt,
                "external_entity_link": config.approval.review_link,
                "timeout_seconds": config.approval.timeout_seconds,
            },
        ),
    )

    builder.add_stage("DeployPrd")
    prd = _deploy_action(
        "DeployModelPrd",
        1,
        f"{name}-deploy-prd",
        "template-model-prd",
        mode="CREATE_UPDATE",
    )
    prd.output_artifacts = [PRODUCTION_OUTPUT]
    builder.add_action("DeployPrd", prd)
    builder.add_action(
        "DeployPrd",
        ActionSpec(
            name="ShiftTraffic",
            kind=ActionKind.TRAFFIC_SHIFT,
            run_order=2,
            input_artifacts=[PRODUCTION_OUTPUT],
            configuration={
                "endpoint_name": model.resolved_endpoint_name,
                "target_variant": name + "-{source_revision}",
                "shift_plan": config.traffic.plan().model_dump(),
            },
        ),
    )

    definition = builder.build()
    logger.info(
        f"Built pipeline {definition.pipeline_id} with source {definition.source_provider}: "
        + " -> ".join(definition.stage_names())
    )
    return definition


def _deploy_action(
    name: str,
    run_order: int,
    stack_name: str,
    template: str,
    with_configuration: bool = True,
    mode: str = "REPLACE_ON_FAILURE",
) -> ActionSpec:
    configuration = {
        "action_mode": mode,
        "stack_name": stack_name,
        "template_path": f"{BUILD_OUTPUT}::{template}.yml",
    }
    if with_configuration:
        configuration["template_configuration"] = f"{BUILD_OUTPUT}::{template}.json"
    return ActionSpec(
        name=name,
        kind=ActionKind.DEPLOY,
        run_order=run_order,
        input_artifacts=[BUILD_OUTPUT],
        configuration=configuration,
    )
