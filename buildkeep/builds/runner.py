"""Build step execution.

This module handles:
- The context handed to build steps and post-build publishers
- Running shell steps in the build's workspace
- Capturing step output in the build log
- Enforcing step timeouts
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, TextIO

from buildkeep.types import Result

if TYPE_CHECKING:
    from buildkeep.builds.records import Build

logger = logging.getLogger(__name__)


class BuildExecutionError(Exception):
    """Raised when a build step cannot be executed."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class BuildContext:
    """Everything a step needs while a build runs.

    Attributes:
        build: The running build.
        project_full_name: Fully qualified name of the project.
        workspace: Workspace pinned for this build.
        log: Open build log.
        cancel: Set when the build should be aborted.
        env: Extra environment variables for child processes.
    """

    build: Build
    project_full_name: str
    workspace: Path
    log: TextIO
    cancel: threading.Event = field(default_factory=threading.Event)
    env: dict[str, str] = field(default_factory=dict)

    def child_env(self) -> dict[str, str]:
        """Environment for processes started by steps."""
        env = dict(os.environ)
        env.update(
            {
                "BUILD_NUMBER": str(self.build.number),
                "BUILD_ID": self.build.id,
                "JOB_NAME": self.project_full_name,
                "WORKSPACE": str(self.workspace),
            }
        )
        env.update(self.env)
        return env


class BuildStep(Protocol):
    """A build step or post-build publisher.

    Returning anything worse than the current result lowers the build's
    final result; steps never improve it.
    """

    def perform(self, ctx: BuildContext) -> Result: ...


class ShellStep:
    """Runs a shell command in the workspace.

    Args:
        command: Command line passed to the shell.
        timeout: Timeout in seconds (None = no timeout).
    """

    def __init__(self, command: str, timeout: int | None = None) -> None:
        self.command = command
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"ShellStep({self.command!r})"

    def perform(self, ctx: BuildContext) -> Result:
        """Run the command.

        Raises:
            BuildExecutionError: If the command times out or cannot start.
        """
        started_at = datetime.now(timezone.utc)
        ctx.log.write(f"# Command: {self.command}\n")
        ctx.log.write(f"# Started: {started_at.isoformat()}\n")
        ctx.log.flush()
        logger.info("Executing step: %s", self.command)

        try:
            result = subprocess.run(
                self.command,
                shell=True,
                cwd=ctx.workspace,
                stdout=ctx.log,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                env=ctx.child_env(),
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            ctx.log.write(f"\n# TIMEOUT after {self.timeout} seconds\n")
            raise BuildExecutionError(
                f"Step timed out after {self.timeout} seconds",
                exit_code=-1,
                code="build_timeout",
            ) from e
        except OSError as e:
            raise BuildExecutionError(
                f"Failed to execute step: {e}",
                exit_code=None,
                code="execution_error",
            ) from e

        ctx.log.write(f"# Exit code: {result.returncode}\n")
        ctx.log.flush()
        if result.returncode != 0:
            logger.error(
                "Step failed with exit code %d. See log: %s",
                result.returncode,
                ctx.build.log_path,
            )
            return Result.FAILURE
        return Result.SUCCESS


def run_steps(
    steps: list[BuildStep],
    ctx: BuildContext,
    result: Result = Result.SUCCESS,
    stop_on_failure: bool = True,
) -> Result:
    """Run steps in order, folding their results into one.

    Args:
        steps: Steps to perform.
        ctx: Build context.
        result: Result so far.
        stop_on_failure: Skip remaining steps once the result is FAILURE
            or worse.

    Returns:
        Combined result.
    """
    for step in steps:
        if ctx.cancel.is_set():
            ctx.log.write("# Build aborted\n")
            return result.combine(Result.ABORTED)
        if stop_on_failure and not result.is_better_or_equal(Result.UNSTABLE):
            break
        try:
            step_result = step.perform(ctx)
        except BuildExecutionError as e:
            ctx.log.write(f"# ERROR: {e}\n")
            logger.error("Step %r failed: %s", step, e)
            step_result = Result.FAILURE
        result = result.combine(step_result)
    return result


__all__ = [
    "BuildContext",
    "BuildExecutionError",
    "BuildStep",
    "ShellStep",
    "run_steps",
]
