"""Tests for builds/runner.py module."""

import threading

import pytest

from buildkeep.builds.records import Build, BuildRecord
from buildkeep.builds.runner import (
    BuildContext,
    BuildExecutionError,
    ShellStep,
    run_steps,
)
from buildkeep.types import Result


class StaticStep:
    """Step returning a fixed result."""

    def __init__(self, result: Result) -> None:
        self.result = result
        self.calls = 0

    def perform(self, ctx: BuildContext) -> Result:
        self.calls += 1
        return self.result


class FailingStep:
    """Step raising BuildExecutionError."""

    def perform(self, ctx: BuildContext) -> Result:
        raise BuildExecutionError("cannot start")


@pytest.fixture
def ctx(tmp_path):
    """Build context with an open log."""
    build_dir = tmp_path / "builds" / "00000007"
    build_dir.mkdir(parents=True)
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    build = Build(BuildRecord(project_id=1, number=7), build_dir)
    with build.log_path.open("w", encoding="utf-8") as log:
        yield BuildContext(
            build=build,
            project_full_name="team/app",
            workspace=workspace,
            log=log,
        )


class TestShellStep:
    """Test shell step execution."""

    def test_success(self, ctx) -> None:
        """A zero exit status is SUCCESS and output goes to the log."""
        assert ShellStep("echo hello").perform(ctx) is Result.SUCCESS
        ctx.log.flush()
        log = ctx.build.log_path.read_text()
        assert "hello" in log
        assert "# Exit code: 0" in log

    def test_failure(self, ctx) -> None:
        """A non-zero exit status is FAILURE."""
        assert ShellStep("exit 3").perform(ctx) is Result.FAILURE

    def test_runs_in_workspace_with_env(self, ctx) -> None:
        """Steps run in the workspace with build variables set."""
        ShellStep('echo "$JOB_NAME #$BUILD_NUMBER" > out.txt').perform(ctx)
        assert (ctx.workspace / "out.txt").read_text().strip() == "team/app #7"

    def test_timeout(self, ctx) -> None:
        """A step exceeding its timeout raises BuildExecutionError."""
        with pytest.raises(BuildExecutionError) as exc_info:
            ShellStep("sleep 5", timeout=1).perform(ctx)
        assert exc_info.value.code == "build_timeout"

    def test_child_env(self, ctx) -> None:
        """Extra variables override the defaults."""
        ctx.env["BUILD_NUMBER"] = "override"
        env = ctx.child_env()
        assert env["BUILD_NUMBER"] == "override"
        assert env["BUILD_ID"] == "00000007"
        assert env["WORKSPACE"] == str(ctx.workspace)


class TestRunSteps:
    """Test folding step results."""

    def test_worst_result_wins(self, ctx) -> None:
        """The combined result is the worst step result."""
        steps = [StaticStep(Result.SUCCESS), StaticStep(Result.UNSTABLE)]
        assert run_steps(steps, ctx) is Result.UNSTABLE

    def test_stop_on_failure(self, ctx) -> None:
        """Steps after a failure are skipped."""
        later = StaticStep(Result.SUCCESS)
        assert run_steps([StaticStep(Result.FAILURE), later], ctx) is Result.FAILURE
        assert later.calls == 0

    def test_continue_after_failure(self, ctx) -> None:
        """Publishers run even after a failure."""
        later = StaticStep(Result.SUCCESS)
        result = run_steps([later], ctx, Result.FAILURE, stop_on_failure=False)
        assert result is Result.FAILURE
        assert later.calls == 1

    def test_unstable_does_not_stop(self, ctx) -> None:
        """UNSTABLE steps do not skip the rest."""
        later = StaticStep(Result.SUCCESS)
        run_steps([StaticStep(Result.UNSTABLE), later], ctx)
        assert later.calls == 1

    def test_execution_error_is_failure(self, ctx) -> None:
        """A step that cannot run fails the build."""
        assert run_steps([FailingStep()], ctx) is Result.FAILURE
        ctx.log.flush()
        assert "# ERROR: cannot start" in ctx.build.log_path.read_text()

    def test_cancelled(self, ctx) -> None:
        """A cancelled build is ABORTED and skips remaining steps."""
        ctx.cancel = threading.Event()
        ctx.cancel.set()
        step = StaticStep(Result.SUCCESS)
        assert run_steps([step], ctx) is Result.ABORTED
        assert step.calls == 0
