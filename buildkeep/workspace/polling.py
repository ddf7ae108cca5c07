"""Change-detection polling strategies.

Detecting source changes is the job of an external collaborator. The core
only needs to know whether a strategy must look at the workspace, since
that decides how it queues against builds.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class PollingStrategy(Protocol):
    """Strategy deciding whether a project has pending changes."""

    def requires_workspace(self) -> bool:
        """Whether poll() needs the project's workspace on disk."""
        ...

    def poll(self, workspace: Path | None, cancel: threading.Event) -> bool:
        """Return True if changes were detected.

        Args:
            workspace: The pinned workspace, or None if not required.
            cancel: Set when the poll should stop early.
        """
        ...


class NullPolling:
    """Strategy for projects without change detection."""

    def requires_workspace(self) -> bool:
        return False

    def poll(self, workspace: Path | None, cancel: threading.Event) -> bool:
        return False


class CommandPolling:
    """Runs a shell command in the workspace; exit code 0 means changes.

    The command runs in its own process group. Setting the cancel event
    kills the whole group, so an interrupted poll gives the workspace back
    without waiting for the command.

    Args:
        command: Shell command to run.
        timeout: Command timeout in seconds.
        check_interval: Seconds between cancellation checks.
    """

    def __init__(
        self, command: str, timeout: int = 300, check_interval: float = 0.05
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.check_interval = check_interval

    def requires_workspace(self) -> bool:
        return True

    def poll(self, workspace: Path | None, cancel: threading.Event) -> bool:
        """Run the command; a cancelled or timed out poll reports no changes."""
        if workspace is None:
            raise ValueError("CommandPolling needs a workspace")
        if cancel.is_set():
            return False

        workspace.mkdir(parents=True, exist_ok=True)
        logger.debug("Polling with %r in %s", self.command, workspace)
        proc = subprocess.Popen(
            self.command,
            shell=True,
            cwd=workspace,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                return proc.wait(timeout=self.check_interval) == 0
            except subprocess.TimeoutExpired:
                pass
            if cancel.is_set():
                logger.info("Polling command interrupted: %s", self.command)
                _terminate(proc)
                return False
            if time.monotonic() >= deadline:
                logger.warning(
                    "Polling command timed out after %ds: %s",
                    self.timeout,
                    self.command,
                )
                _terminate(proc)
                return False


def _terminate(proc: subprocess.Popen[bytes], grace: float = 5.0) -> None:
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=grace)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    proc.wait()


def strategy_for_command(command: str | None) -> PollingStrategy:
    """Pick the polling strategy configured for a project."""
    if command:
        return CommandPolling(command)
    return NullPolling()


__all__ = [
    "CommandPolling",
    "NullPolling",
    "PollingStrategy",
    "strategy_for_command",
]
