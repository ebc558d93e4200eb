"""
Tests for the YAML pipeline loader.
"""

import pytest
import yaml

from shipyard.pipeline.application.actions import CommandAction, DeployAction, RollbackAction
from shipyard.pipeline.application.loader import load_pipeline, parse_pipeline
from shipyard.pipeline.domain.enums import FailurePolicy, SkipPolicy
from shipyard.pipeline.domain.models import RunContext
from shipyard.shared.domain.exceptions import CycleDetected, PipelineDefinitionError

WEBAPP = """
name: webapp
failurePolicy: fail-fast
parallelLimit: 2
variables:
  REGISTRY: ghcr.io/acme
targets:
  staging:
    deployCommand: kubectl set image deployment/web web=${REGISTRY}/web:${VERSION} -n staging
    healthCheckUrl: https://staging.example.com/health
    healthTimeout: 120
  production:
    deployCommand: kubectl set image deployment/web web=${REGISTRY}/web:${VERSION} -n production
    healthCommand: kubectl rollout status deployment/web -n production
    currentVersion: "41"
stages:
  - name: install
    run: npm ci
  - name: lint
    parallel: checks
    run: npm run lint
  - name: unit
    parallel: checks
    run:
      - npm test
      - npm run coverage
    retry: {attempts: 2, backoff: fixed, delay: 1}
  - name: scan
    run: npm audit
    nonBlocking: true
    dependsOn: [install]
  - name: deploy-staging
    when: {branch: develop}
    deploy: staging
  - name: approve-production
    when: main
    approval: {message: "Deploy to production?", timeout: 3600}
  - name: deploy-production
    deploy: {target: production, version: "${BUILD_ID}-${GIT_COMMIT}"}
    skipPolicy: skip_blocks
"""


@pytest.fixture
def definition():
    return parse_pipeline(yaml.safe_load(WEBAPP))


class TestParsePipeline:

    def test_pipeline_settings(self, definition):
        assert definition.name == "webapp"
        assert definition.config.failure_policy is FailurePolicy.FAIL_FAST
        assert definition.config.parallel_limit == 2
        assert definition.variables == {"REGISTRY": "ghcr.io/acme"}

    def test_targets(self, definition):
        staging = definition.targets["staging"]
        production = definition.targets["production"]

        assert staging.health_check_url == "https://staging.example.com/health"
        assert staging.health_timeout == 120.0
        assert production.health_command.startswith("kubectl rollout status")
        assert production.current_version == "41"

    def test_implicit_sequencing(self, definition):
        stages = {s.name: s for s in definition.stages}

        assert stages["install"].depends_on == ()
        assert stages["lint"].depends_on == ("install",)
        assert stages["unit"].depends_on == ("install",)
        assert stages["scan"].depends_on == ("install",)
        assert stages["deploy-staging"].depends_on == ("scan",)
        assert stages["approve-production"].depends_on == ("deploy-staging",)

    def test_stage_after_group_depends_on_group(self):
        definition = parse_pipeline({
            "stages": [
                {"name": "a", "parallel": "g"},
                {"name": "b", "parallel": "g"},
                {"name": "c"},
            ]
        })

        graph = definition.build_graph()

        assert definition.stages[2].depends_on == ("g",)
        assert graph.dependencies["c"] == frozenset({"a", "b"})

    def test_empty_depends_on_opts_out(self):
        definition = parse_pipeline({
            "stages": [{"name": "a"}, {"name": "b", "dependsOn": []}],
        })

        assert definition.stages[1].depends_on == ()

    def test_actions(self, definition):
        stages = {s.name: s for s in definition.stages}

        assert isinstance(stages["install"].action, CommandAction)
        assert stages["unit"].action.command == "npm test && npm run coverage"
        assert isinstance(stages["deploy-staging"].action, DeployAction)
        assert stages["deploy-staging"].action.version == "${BUILD_ID}"
        assert stages["deploy-production"].action.version == "${BUILD_ID}-${GIT_COMMIT}"
        assert stages["approve-production"].action is None

    def test_stage_options(self, definition):
        stages = {s.name: s for s in definition.stages}

        assert stages["unit"].retryable is True
        assert stages["unit"].max_attempts == 2
        assert stages["unit"].retry.backoff == "fixed"
        assert stages["lint"].retryable is False
        assert stages["lint"].max_attempts == 1
        assert stages["scan"].non_blocking is True
        assert stages["approve-production"].approval.message == "Deploy to production?"
        assert stages["approve-production"].approval.timeout == 3600.0
        assert stages["deploy-production"].skip_policy is SkipPolicy.SKIP_BLOCKS

    def test_conditions(self, definition):
        stages = {s.name: s for s in definition.stages}
        develop = RunContext(branch="develop")
        main = RunContext(branch="main")

        assert stages["deploy-staging"].condition(develop, {}) is True
        assert stages["deploy-staging"].condition(main, {}) is False
        assert stages["approve-production"].condition(main, {}) is True

    def test_whole_definition_builds_a_graph(self, definition):
        graph = definition.build_graph()

        assert graph.order[0] == "install"
        assert graph.order[-1] == "deploy-production"

    def test_rollback_action(self):
        definition = parse_pipeline({
            "targets": {"production": {"deployCommand": "true"}},
            "stages": [{"name": "undo", "rollback": "production"}],
        })

        assert isinstance(definition.stages[0].action, RollbackAction)

    def test_boolean_retry_uses_defaults(self):
        definition = parse_pipeline({"stages": [{"name": "flaky", "run": "true", "retry": True}]})

        assert definition.stages[0].retryable is True
        assert definition.stages[0].max_attempts == 3


class TestInvalidDefinitions:

    @pytest.mark.parametrize(
        "data, match",
        [
            ([], "mapping"),
            ({"stages": []}, "non-empty"),
            ({"stages": [{"run": "true"}]}, "no name"),
            ({"stages": [{"name": "a", "colour": "red"}]}, "Unknown keys"),
            ({"stages": [{"name": "a", "run": "x", "deploy": "staging"}]}, "only define one"),
            ({"stages": [{"name": "a", "deploy": "qa"}]}, "unknown target"),
            ({"failurePolicy": "sometimes", "stages": [{"name": "a"}]}, "failurePolicy"),
            ({"stages": [{"name": "a", "retry": {"attempts": 2, "backoff": "linear"}}]}, "backoff"),
            ({"stages": [{"name": "a", "skipPolicy": "ignore"}]}, "skipPolicy"),
        ],
    )
    def test_rejected(self, data, match):
        with pytest.raises(PipelineDefinitionError, match=match):
            parse_pipeline(data)

    def test_split_parallel_group_is_rejected(self):
        with pytest.raises(PipelineDefinitionError, match="declared together"):
            parse_pipeline({
                "stages": [
                    {"name": "a", "parallel": "g"},
                    {"name": "b"},
                    {"name": "c", "parallel": "g"},
                ]
            })

    def test_cycle_surfaces_when_building_graph(self):
        definition = parse_pipeline({
            "stages": [
                {"name": "a", "dependsOn": ["b"]},
                {"name": "b", "dependsOn": ["a"]},
            ]
        })

        with pytest.raises(CycleDetected):
            definition.build_graph()


class TestLoadPipeline:

    def test_load_from_file(self, pipeline_file):
        definition = load_pipeline(pipeline_file)

        assert definition.name == "demo"
        assert definition.source == pipeline_file
        assert [s.name for s in definition.stages] == ["build", "lint", "unit", "package"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(PipelineDefinitionError, match="not found"):
            load_pipeline(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("stages: [unclosed", encoding="utf-8")

        with pytest.raises(PipelineDefinitionError, match="Invalid YAML"):
            load_pipeline(path)

    def test_name_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "release.yaml"
        path.write_text("stages:\n  - name: only\n", encoding="utf-8")

        assert load_pipeline(path).name == "release"
