import pytest

from safedeploy.config import SafeDeployConfig
from safedeploy.contracts import ActionKind, ActionSpec
from safedeploy.dispatch import (
    PipelineBuilder,
    build_safe_deployment_pipeline,
    load_pipeline_definition,
)
from safedeploy.errors import ConfigurationError


def test_standard_pipeline_layout():
    definition = build_safe_deployment_pipeline(SafeDeployConfig())

    assert definition.pipeline_id == "nyctaxi"
    assert definition.source_provider == "CodeCommit"
    assert definition.stage_names() == ["Source", "Build", "Train", "DeployDev", "DeployPrd"]

    train = definition.stages[2]
    groups = train.groups()
    assert [a.name for a in groups[0].actions] == ["CreateExperiment"]
    assert [a.name for a in groups[1].actions] == ["TrainModel", "SuggestBaseline"]

    deploy_dev = definition.stages[3]
    assert [g.actions[0].kind for g in deploy_dev.groups()] == [
        ActionKind.DEPLOY,
        ActionKind.APPROVAL,
    ]
    prd = definition.stages[4]
    assert prd.traffic_shift_endpoints() == ["nyctaxi-prd"]
    shift = prd.groups()[1].actions[0]
    assert shift.configuration["shift_plan"]["steps"][0]["weight"] == 10


def test_external_token_selects_github_once():
    config = SafeDeployConfig(
        source={"github_token": "0123456789abcdef0123456789abcdef01234567"}
    )
    definition = build_safe_deployment_pipeline(config)
    assert definition.source_provider == "GitHub"

    with pytest.raises(ConfigurationError):
        build_safe_deployment_pipeline(SafeDeployConfig(source={"github_token": "bogus"}))


def test_input_must_be_produced_earlier():
    builder = PipelineBuilder("p")
    builder.add_action(
        "Build",
        ActionSpec(name="Package", kind=ActionKind.BUILD, input_artifacts=["Src"], output_artifacts=["Out"]),
    )
    builder.add_action(
        "Build",
        ActionSpec(name="Fetch", kind=ActionKind.SOURCE, run_order=2, output_artifacts=["Src"]),
    )
    with pytest.raises(ConfigurationError, match="Src"):
        builder.build()


def test_same_group_outputs_are_not_visible_to_siblings():
    builder = PipelineBuilder("p")
    builder.add_action(
        "Source",
        ActionSpec(name="Fetch", kind=ActionKind.SOURCE, output_artifacts=["Src"]),
    )
    builder.add_action(
        "Source",
        ActionSpec(name="Use", kind=ActionKind.INVOKE, input_artifacts=["Src"]),
    )
    with pytest.raises(ConfigurationError):
        builder.build()


def test_output_produced_twice_across_stages_is_rejected():
    builder = PipelineBuilder("p")
    builder.add_action(
        "One", ActionSpec(name="A", kind=ActionKind.SOURCE, output_artifacts=["X"])
    )
    builder.add_action(
        "Two", ActionSpec(name="B", kind=ActionKind.SOURCE, output_artifacts=["X"])
    )
    with pytest.raises(ConfigurationError, match="more than once"):
        builder.build()


def test_duplicate_and_empty_stages_are_rejected():
    builder = PipelineBuilder("p")
    builder.add_stage("Source")
    with pytest.raises(ConfigurationError):
        builder.add_stage("Source")
    with pytest.raises(ConfigurationError, match="no actions"):
        builder.build()
    with pytest.raises(ConfigurationError):
        PipelineBuilder("empty").build()


def test_duplicate_action_names_in_stage_are_rejected():
    builder = PipelineBuilder("p")
    builder.add_action("S", ActionSpec(name="A", kind=ActionKind.SOURCE))
    builder.add_action("S", ActionSpec(name="A", kind=ActionKind.INVOKE, run_order=2))
    with pytest.raises(ConfigurationError):
        builder.build()


def test_load_pipeline_definition_from_yaml(tmp_path):
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        """
pipeline_id: churn
source_provider: S3
stages:
  - name: Source
    actions:
      - name: Fetch
        kind: Source
        output_artifacts: [Src]
  - name: Deploy
    actions:
      - name: Apply
        kind: Deploy
        input_artifacts: [Src]
        configuration:
          stack_name: churn
          template_path: Src::template.yml
"""
    )
    definition = load_pipeline_definition(path)
    assert definition.stage_names() == ["Source", "Deploy"]

    path.write_text("pipeline_id: churn\nsource_provider: Svn\nstages: []\n")
    with pytest.raises(ConfigurationError):
        load_pipeline_definition(path)
