"""
Tests for run and stage result models.
"""

import pytest

from shipyard.pipeline.domain.enums import RunStatus, StageStatus
from shipyard.pipeline.domain.models import PipelineRun, RunContext, StageResult


def run_with(*results):
    return PipelineRun(pipeline="webapp", results=list(results))


class TestTerminalStatus:

    def test_all_success(self):
        run = run_with(StageResult("a", StageStatus.SUCCESS), StageResult("b", StageStatus.SKIPPED))

        assert run.terminal_status() is RunStatus.SUCCESS

    def test_non_blocking_failure_is_unstable(self):
        run = run_with(
            StageResult("a", StageStatus.SUCCESS),
            StageResult("scan", StageStatus.FAILED, non_blocking=True),
        )

        assert run.terminal_status() is RunStatus.UNSTABLE

    def test_blocking_failure_wins_over_abort(self):
        run = run_with(StageResult("a", StageStatus.FAILED), StageResult("b", StageStatus.ABORTED))

        assert run.terminal_status() is RunStatus.FAILED

    def test_abort_wins_over_unstable(self):
        run = run_with(
            StageResult("scan", StageStatus.FAILED, non_blocking=True),
            StageResult("b", StageStatus.ABORTED),
        )

        assert run.terminal_status() is RunStatus.ABORTED

    def test_fatal_is_failed(self):
        run = run_with(StageResult("a", StageStatus.SUCCESS))
        run.fatal = True

        assert run.terminal_status() is RunStatus.FAILED

    def test_finalize_sets_completion(self):
        run = run_with(StageResult("a", StageStatus.SUCCESS))
        run.start()
        run.finalize()

        assert run.status is RunStatus.SUCCESS
        assert run.is_terminal
        assert run.duration >= 0


class TestGroupStatus:

    def test_all_members_succeeded(self):
        run = run_with(
            StageResult("lint", StageStatus.SUCCESS, parallel_group="checks"),
            StageResult("unit", StageStatus.SUCCESS, parallel_group="checks"),
        )

        assert run.group_status("checks") is StageStatus.SUCCESS

    def test_any_failure_fails_group(self):
        run = run_with(
            StageResult("lint", StageStatus.RUNNING, parallel_group="checks"),
            StageResult("unit", StageStatus.FAILED, parallel_group="checks"),
        )

        assert run.group_status("checks") is StageStatus.FAILED

    def test_skipped_member_is_not_success(self):
        run = run_with(
            StageResult("lint", StageStatus.SUCCESS, parallel_group="checks"),
            StageResult("unit", StageStatus.SKIPPED, parallel_group="checks"),
        )

        assert run.group_status("checks") is StageStatus.SKIPPED

    def test_unknown_group(self):
        with pytest.raises(KeyError):
            run_with().group_status("nope")


class TestRunContext:

    def test_template_vars(self):
        context = RunContext(branch="main", build_id="42", commit="abc", variables={"REGION": "eu"})

        values = context.template_vars()

        assert values["BRANCH_NAME"] == "main"
        assert values["BUILD_ID"] == "42"
        assert values["GIT_COMMIT"] == "abc"
        assert values["REGION"] == "eu"

    def test_secrets_only_in_env(self):
        context = RunContext(secrets={"TOKEN": "s3cr3t"})

        assert context.to_env()["TOKEN"] == "s3cr3t"
        assert "TOKEN" not in context.template_vars()
        assert "secrets" not in context.to_json()
        assert "s3cr3t" not in repr(context)


class TestSerialization:

    def test_run_round_trip(self):
        run = run_with(StageResult("build", StageStatus.SUCCESS, attempts=2, exit_code=0))
        run.context = RunContext(branch="develop", build_id="3")
        run.start()

        data = run.to_json()
        loaded = PipelineRun.from_json(data)

        assert data["context"]["buildId"] == "3"
        assert data["environment"] == "staging"
        assert loaded.status is RunStatus.RUNNING
        assert loaded.context.branch == "develop"
        assert loaded.result("build").attempts == 2
        assert loaded.started_at == run.started_at

    def test_stage_result_duration_is_derived(self):
        result = StageResult("build")
        result.start()
        result.finish(StageStatus.SUCCESS, exit_code=0)

        data = result.to_json()

        assert data["duration"] >= 0
        assert StageResult.from_json(data).exit_code == 0
