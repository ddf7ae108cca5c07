"""Tests for builds/service.py module.

Builds run real shell steps in temporary directories.
"""

import json
import threading
import time
from unittest.mock import patch

import pytest

from buildkeep.builds.service import (
    BuildScheduler,
    get_build,
    list_builds,
    resolve_pointer,
)
from buildkeep.projects.service import ProjectNotFoundError, get_project_by_id
from buildkeep.security import ANONYMOUS, AuthorizationError, Principal
from buildkeep.types import PointerName, Requester, Result

ALICE = Principal("alice")


class RecordingPolling:
    """Polling strategy that records whether a build was running."""

    def __init__(self, runtime, project_id: int) -> None:
        self.runtime = runtime
        self.project_id = project_id
        self.saw_build = None

    def requires_workspace(self) -> bool:
        return True

    def poll(self, workspace, cancel) -> bool:
        self.saw_build = self.runtime.running.is_building(self.project_id)
        return True


@pytest.fixture
def scheduler(runtime):
    """Scheduler with enough workers for concurrent tests."""
    scheduler = BuildScheduler(runtime, max_workers=4)
    yield scheduler
    scheduler.shutdown()


def _project(runtime, project_id: int):
    session = runtime.session_factory()
    try:
        project = get_project_by_id(session, project_id)
        project.full_name  # load the folder chain before detaching
        return project
    finally:
        session.close()


def _wait_building(runtime, project_id: int, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not runtime.running.is_building(project_id):
        if time.monotonic() > deadline:
            raise AssertionError("build did not start")
        time.sleep(0.01)


class TestScheduleBuild:
    """Test running builds."""

    def test_successful_build(self, runtime, scheduler, make_project) -> None:
        """A build runs its steps and records the result on disk."""
        pid = make_project("app", shell_steps=["echo compiling"])
        build = scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)

        assert build.number == 1
        assert build.result is Result.SUCCESS
        assert build.record.cause == "manual"
        assert build.record.started_at is not None
        assert build.record.finished_at is not None
        assert "compiling" in build.log_path.read_text()

        record = json.loads((build.root_dir / "build.json").read_text())
        assert record["result"] == "SUCCESS"
        location = runtime.resolver.locate(_project(runtime, pid))
        assert build.root_dir == location.builds_root / "00000001"
        assert build.workspace == location.workspace
        assert runtime.pointers.read(location, PointerName.MOST_RECENT) == 1

    def test_numbers_increase(self, runtime, scheduler, make_project) -> None:
        """Every build receives the next number."""
        pid = make_project("app", shell_steps=["true"])
        numbers = [
            scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30).number
            for _ in range(3)
        ]
        assert numbers == [1, 2, 3]
        assert _project(runtime, pid).next_build_number == 4

    def test_failed_build(self, runtime, scheduler, make_project) -> None:
        """A failing step fails the build and leaves stable pointers alone."""
        pid = make_project("app", shell_steps=["exit 0"])
        scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)
        session = runtime.session_factory()
        project = get_project_by_id(session, pid)
        project.shell_steps = ["exit 1"]
        session.commit()
        session.close()

        build = scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)
        assert build.result is Result.FAILURE
        location = runtime.resolver.locate(_project(runtime, pid))
        assert runtime.pointers.read(location, PointerName.MOST_RECENT) == 2
        assert runtime.pointers.read(location, PointerName.MOST_RECENT_SUCCESSFUL) == 1

    def test_archives_artifacts(self, scheduler, make_project) -> None:
        """Archive patterns copy workspace files into the build."""
        pid = make_project(
            "app",
            shell_steps=["mkdir -p dist && echo data > dist/out.bin"],
            archive_patterns=["dist/*.bin"],
        )
        build = scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)
        assert build.result is Result.SUCCESS
        assert (build.archive_dir / "dist" / "out.bin").exists()
        assert [a.filename for a in build.record.artifacts] == ["out.bin"]

    def test_missing_artifacts_fail(self, scheduler, make_project) -> None:
        """An archiver with no match fails the build."""
        pid = make_project("app", shell_steps=["true"], archive_patterns=["*.bin"])
        build = scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)
        assert build.result is Result.FAILURE

    def test_post_build_failure_pointers(
        self, runtime, scheduler, make_project
    ) -> None:
        """A failing post-build step only advances mostRecent."""
        pid = make_project(
            "app", shell_steps=["touch out.bin"], archive_patterns=["out.bin"]
        )
        first = scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)
        assert first.result is Result.SUCCESS

        session = runtime.session_factory()
        project = get_project_by_id(session, pid)
        project.shell_steps = ["rm -f out.bin"]
        session.commit()
        session.close()

        second = scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)
        assert second.result is Result.FAILURE
        location = runtime.resolver.locate(_project(runtime, pid))
        assert runtime.pointers.read(location, PointerName.MOST_RECENT) == 2
        assert runtime.pointers.read(location, PointerName.MOST_RECENT_STABLE) == 1
        assert (
            runtime.pointers.read(location, PointerName.MOST_RECENT_SUCCESSFUL) == 1
        )

    def test_unauthorized(self, runtime, scheduler, make_project) -> None:
        """Principals without BUILD cannot schedule builds."""
        pid = make_project("app", shell_steps=["true"])
        with pytest.raises(AuthorizationError):
            scheduler.schedule_build(pid, "manual", ANONYMOUS)
        location = runtime.resolver.locate(_project(runtime, pid))
        assert runtime.store.list_build_numbers(location.builds_root) == []

    def test_unknown_project(self, scheduler) -> None:
        """Scheduling an unknown project fails immediately."""
        with pytest.raises(ProjectNotFoundError):
            scheduler.schedule_build(999, "manual", ALICE)

    def test_crash_marks_failure(self, runtime, scheduler, make_project) -> None:
        """An unexpected error still finalizes the build as FAILURE."""
        pid = make_project("app", shell_steps=["true"])
        with patch.object(
            BuildScheduler, "_perform", side_effect=RuntimeError("boom")
        ):
            future = scheduler.schedule_build(pid, "manual", ALICE)
            with pytest.raises(RuntimeError):
                future.result(timeout=30)

        build = get_build(runtime, _project(runtime, pid), 1)
        assert build.result is Result.FAILURE
        assert build.record.error_message == "boom"
        assert not runtime.running.is_building(pid)

    def test_shutdown_rejects_builds(self, scheduler, make_project) -> None:
        """A shut down scheduler accepts no more work."""
        pid = make_project("app")
        scheduler.shutdown()
        with pytest.raises(RuntimeError):
            scheduler.schedule_build(pid, "manual", ALICE)


class TestWorkspaceSharing:
    """Test how builds and polls share workspaces."""

    def test_builds_serialize(self, scheduler, make_project) -> None:
        """Without concurrent builds the second build waits for the first."""
        pid = make_project("app", shell_steps=["sleep 0.3"])
        first = scheduler.schedule_build(pid, "manual", ALICE)
        second = scheduler.schedule_build(pid, "manual", ALICE)
        a, b = first.result(timeout=30), second.result(timeout=30)
        earlier, later = sorted([a, b], key=lambda build: build.number)
        assert later.record.started_at >= earlier.record.finished_at
        assert earlier.workspace == later.workspace

    def test_concurrent_builds(self, scheduler, make_project) -> None:
        """Concurrent builds run side by side in separate workspaces."""
        pid = make_project("app", shell_steps=["sleep 0.5"], concurrent_build=True)
        futures = [scheduler.schedule_build(pid, "manual", ALICE) for _ in range(2)]
        a, b = (f.result(timeout=30) for f in futures)
        assert a.workspace != b.workspace
        assert {a.workspace.name, b.workspace.name} == {"workspace", "workspace@2"}

    def test_poll_waits_for_build(self, runtime, scheduler, make_project) -> None:
        """A poll needing the workspace never overlaps a build."""
        pid = make_project("app", shell_steps=["sleep 0.3"])
        future = scheduler.schedule_build(pid, "manual", ALICE)
        _wait_building(runtime, pid)

        strategy = RecordingPolling(runtime, pid)
        assert scheduler.poll_changes(pid, strategy) is True
        assert strategy.saw_build is False
        future.result(timeout=30)

    def test_poll_command(self, runtime, scheduler, make_project) -> None:
        """The project's poll command runs in its workspace."""
        pid = make_project("app", poll_command="test -f changed")
        assert scheduler.poll_changes(pid) is False
        runtime.resolver.workspace(_project(runtime, pid)).joinpath(
            "changed"
        ).touch()
        assert scheduler.poll_changes(pid) is True

    def test_cancel_running_poll(self, runtime, scheduler, make_project) -> None:
        """Interrupting a running poll frees the workspace for a build."""
        pid = make_project("app", shell_steps=["true"], poll_command="sleep 5")
        lock = runtime.workspace_locks.for_project(
            pid, runtime.resolver.workspace(_project(runtime, pid)), False
        )
        cancel = threading.Event()
        results = []
        poller = threading.Thread(
            target=lambda: results.append(scheduler.poll_changes(pid, cancel=cancel))
        )
        poller.start()
        deadline = time.monotonic() + 5
        while lock.holder is not Requester.POLL:
            assert time.monotonic() < deadline, "poll did not start"
            time.sleep(0.01)

        future = scheduler.schedule_build(pid, "manual", ALICE)
        started = time.monotonic()
        cancel.set()
        poller.join(timeout=5)
        assert time.monotonic() - started < 2
        assert results == [False]
        assert future.result(timeout=30).result is Result.SUCCESS


class TestDownstream:
    """Test downstream triggers."""

    def test_success_triggers(self, runtime, scheduler, make_project) -> None:
        """A successful build triggers its downstream projects."""
        down = make_project("down", shell_steps=["true"])
        up = make_project("up", shell_steps=["true"], downstream_projects=["down"])
        scheduler.schedule_build(up, "manual", ALICE).result(timeout=30)
        scheduler.wait_for_idle(timeout=30)

        [build] = list_builds(runtime, _project(runtime, down))
        assert build.record.cause == "upstream up #1"

    def test_failure_does_not_trigger(self, runtime, scheduler, make_project) -> None:
        """Results worse than the threshold do not trigger."""
        down = make_project("down", shell_steps=["true"])
        up = make_project("up", shell_steps=["false"], downstream_projects=["down"])
        scheduler.schedule_build(up, "manual", ALICE).result(timeout=30)
        scheduler.wait_for_idle(timeout=30)
        assert list_builds(runtime, _project(runtime, down)) == []

    def test_unstable_threshold(self, runtime, scheduler, make_project) -> None:
        """A FAILURE threshold triggers even after failures."""
        down = make_project("down", shell_steps=["true"])
        up = make_project(
            "up",
            shell_steps=["false"],
            downstream_projects=["down"],
            downstream_threshold="FAILURE",
        )
        scheduler.schedule_build(up, "manual", ALICE).result(timeout=30)
        scheduler.wait_for_idle(timeout=30)
        assert len(list_builds(runtime, _project(runtime, down))) == 1

    def test_block_when_upstream_building(
        self, runtime, scheduler, make_project
    ) -> None:
        """A blocked project waits until its upstream finished building."""
        down = make_project(
            "down", shell_steps=["true"], block_when_upstream_building=True
        )
        up = make_project(
            "up",
            shell_steps=["sleep 0.4"],
            downstream_projects=["down"],
            downstream_threshold="FAILURE",
        )
        up_future = scheduler.schedule_build(up, "manual", ALICE)
        _wait_building(runtime, up)
        down_build = scheduler.schedule_build(down, "manual", ALICE).result(
            timeout=30
        )
        up_build = up_future.result(timeout=30)
        scheduler.wait_for_idle(timeout=30)
        assert down_build.record.started_at >= up_build.record.finished_at


class TestWipeOut:
    """Test workspace wipe-out."""

    def test_wipe(self, runtime, scheduler, make_project) -> None:
        """All workspaces are removed; builds and pointers stay."""
        pid = make_project("app", shell_steps=["touch file"])
        build = scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)
        assert (build.workspace / "file").exists()

        removed = scheduler.wipe_out_workspace(pid, ALICE)
        assert removed == [build.workspace]
        assert not build.workspace.exists()

        project = _project(runtime, pid)
        location = runtime.resolver.locate(project)
        assert (build.root_dir / "build.json").exists()
        assert [b.number for b in list_builds(runtime, project)] == [1]
        assert get_build(runtime, project, 1).result is Result.SUCCESS
        for name in PointerName:
            assert runtime.pointers.read(location, name) == 1

    def test_wipe_unauthorized(self, runtime, scheduler, make_project) -> None:
        """Wipe-out needs the WIPEOUT permission and then changes nothing."""
        pid = make_project("app", shell_steps=["touch file"])
        build = scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)
        with pytest.raises(AuthorizationError):
            scheduler.wipe_out_workspace(pid, ANONYMOUS)
        assert (build.workspace / "file").exists()


class TestQueries:
    """Test build lookup helpers."""

    def test_list_get_and_resolve(self, runtime, scheduler, make_project) -> None:
        """Builds list newest first and pointers resolve to builds."""
        pid = make_project("app", shell_steps=["true"])
        for _ in range(3):
            scheduler.schedule_build(pid, "manual", ALICE).result(timeout=30)
        project = _project(runtime, pid)

        assert [b.number for b in list_builds(runtime, project)] == [3, 2, 1]
        assert [b.number for b in list_builds(runtime, project, limit=2)] == [3, 2]
        assert get_build(runtime, project, 2).number == 2
        resolved = resolve_pointer(runtime, project, PointerName.MOST_RECENT_STABLE)
        assert resolved is not None and resolved.number == 3
