"""Tests for the CLI.

Commands run against a temporary home directory and SQLite database
configured through the environment.
"""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from buildkeep import __version__
from buildkeep.builds.service import BuildScheduler
from buildkeep.builds.store import BuildStoreError
from buildkeep.cli import app
from buildkeep.workspace.lock import LockCancelledError

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a temporary home directory."""
    monkeypatch.setenv("BUILDKEEP_HOME_DIR", str(tmp_path / "home"))
    monkeypatch.setenv("BUILDKEEP_DB_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("BUILDKEEP_LOCK_POLL_INTERVAL", "0.01")
    monkeypatch.setenv("BUILDKEEP_LOG_LEVEL", "ERROR")
    monkeypatch.delenv("BUILDKEEP_USER", raising=False)
    return tmp_path


def invoke(*args: str):
    return runner.invoke(app, list(args))


def create_app_project(*extra: str) -> None:
    result = invoke("folders", "create", "team", "--user", "alice")
    assert result.exit_code == 0, result.output
    result = invoke(
        "projects",
        "create",
        "app",
        "--folder",
        "team",
        "--step",
        "echo hello",
        "--user",
        "alice",
        *extra,
    )
    assert result.exit_code == 0, result.output


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "buildkeep" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_subcommand_help(self) -> None:
        """Subcommand groups list their commands."""
        result = runner.invoke(app, ["projects", "--help"])
        assert result.exit_code == 0
        assert "rename" in result.stdout
        assert "delete" in result.stdout


class TestConfigCommand:
    """Test the config command."""

    def test_config_text(self, cli_env) -> None:
        """config prints the effective settings."""
        result = invoke("config")
        assert result.exit_code == 0
        assert "Effective Configuration" in result.stdout
        assert "Pointer style" in result.stdout

    def test_config_json(self, cli_env) -> None:
        """config --json prints parseable settings."""
        result = invoke("config", "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["home_dir"] == str(cli_env / "home")
        assert data["lock_poll_interval"] == 0.01


class TestProjectCommands:
    """Test project management commands."""

    def test_create_and_list(self, cli_env) -> None:
        """A created project shows up in the listing."""
        create_app_project()

        result = invoke("projects", "list", "--json", "--user", "alice")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data == [
            {"full_name": "team/app", "last_build_number": 0, "description": None}
        ]

    def test_anonymous_list_is_filtered(self, cli_env) -> None:
        """Anonymous users do not see projects without read access."""
        create_app_project()
        result = invoke("projects", "list", "--json")
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_show_json(self, cli_env) -> None:
        """projects show --json prints the definition."""
        create_app_project()
        result = invoke("projects", "show", "team/app", "--json", "--user", "alice")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["name"] == "app"
        assert data["shell_steps"] == ["echo hello"]

    def test_missing_project(self, cli_env) -> None:
        """Unknown projects exit non-zero with an error code."""
        result = invoke("projects", "show", "nope", "--user", "alice")
        assert result.exit_code == 1
        assert "project_not_found" in result.stdout

    def test_folders_and_move(self, cli_env) -> None:
        """A project moves into another folder."""
        create_app_project()
        result = invoke("folders", "create", "ops", "--user", "alice")
        assert result.exit_code == 0
        assert "Created folder ops" in result.stdout

        result = invoke("projects", "move", "team/app", "--to", "ops", "-u", "alice")
        assert result.exit_code == 0, result.output
        assert "ops/app" in result.stdout
        assert (cli_env / "home" / "jobs" / "ops" / "jobs" / "app").is_dir()

    def test_export_and_import(self, cli_env) -> None:
        """An exported definition can be imported again."""
        create_app_project("--description", "demo")
        out = cli_env / "app.yaml"
        result = invoke("projects", "export", "team/app", str(out))
        assert result.exit_code == 0
        assert out.exists()

        result = invoke("projects", "delete", "team/app", "--yes", "--user", "alice")
        assert result.exit_code == 0, result.output

        result = invoke("projects", "import", str(out), "--user", "alice")
        assert result.exit_code == 0, result.output
        assert "Created project: team/app" in result.stdout

    def test_import_existing_fails(self, cli_env) -> None:
        """Importing over an existing project needs --update."""
        create_app_project()
        out = cli_env / "app.yaml"
        invoke("projects", "export", "team/app", str(out))

        result = invoke("projects", "import", str(out), "--user", "alice")
        assert result.exit_code == 1
        assert "Failed" in result.stdout

        result = invoke("projects", "import", str(out), "--update", "--user", "alice")
        assert result.exit_code == 0
        assert "Updated project: team/app" in result.stdout


class TestBuildCommands:
    """Test building and build management commands."""

    def test_build_flow(self, cli_env) -> None:
        """Build, inspect, rename, delete a build and delete the project."""
        create_app_project()

        result = invoke("build", "run", "team/app", "--user", "alice")
        assert result.exit_code == 0, result.output
        assert "#1: SUCCESS" in result.stdout

        result = invoke("builds", "list", "team/app", "--json", "--user", "alice")
        assert result.exit_code == 0
        builds = json.loads(result.stdout)
        assert [b["number"] for b in builds] == [1]
        assert builds[0]["result"] == "SUCCESS"
        assert builds[0]["cause"] == "cli"

        result = invoke("pointers", "show", "team/app", "--json", "--user", "alice")
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {
            "mostRecent": 1,
            "mostRecentStable": 1,
            "mostRecentSuccessful": 1,
        }

        result = invoke("projects", "rename", "team/app", "service", "--user", "alice")
        assert result.exit_code == 0, result.output
        assert "team/service" in result.stdout

        result = invoke("builds", "show", "team/service", "1", "--json", "-u", "alice")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["result"] == "SUCCESS"

        result = invoke("builds", "delete", "team/service", "1", "--user", "alice")
        assert result.exit_code == 0, result.output

        result = invoke("pointers", "show", "team/service", "--json", "-u", "alice")
        assert json.loads(result.stdout)["mostRecent"] is None

        result = invoke("projects", "delete", "team/service", "--yes", "-u", "alice")
        assert result.exit_code == 0, result.output
        result = invoke("projects", "list", "--json", "--user", "alice")
        assert json.loads(result.stdout) == []

    def test_failed_build_exits_non_zero(self, cli_env) -> None:
        """A failing build is reported with exit code 1."""
        result = invoke(
            "projects", "create", "broken", "--step", "exit 3", "--user", "alice"
        )
        assert result.exit_code == 0

        result = invoke("build", "run", "broken", "--user", "alice")
        assert result.exit_code == 1
        assert "#1: FAILURE" in result.stdout

    def test_anonymous_build_denied(self, cli_env) -> None:
        """Anonymous users cannot schedule builds."""
        create_app_project()
        result = invoke("build", "run", "team/app")
        assert result.exit_code == 1
        assert "permission_denied" in result.stdout

    def test_storage_error_reported(self, cli_env) -> None:
        """Storage errors during a build print their code and exit 1."""
        create_app_project()
        with patch.object(
            BuildScheduler, "_perform", side_effect=BuildStoreError("disk full")
        ):
            result = invoke("build", "run", "team/app", "--user", "alice")
        assert result.exit_code == 1
        assert "build_store_error: disk full" in result.stdout

    def test_cancelled_build_reported(self, cli_env) -> None:
        """A cancelled build prints its code and exits 1."""
        create_app_project()
        with patch.object(
            BuildScheduler,
            "_perform",
            side_effect=LockCancelledError("build request cancelled"),
        ):
            result = invoke("build", "run", "team/app", "--user", "alice")
        assert result.exit_code == 1
        assert "lock_cancelled" in result.stdout

    def test_user_from_environment(self, cli_env, monkeypatch) -> None:
        """BUILDKEEP_USER selects the acting user."""
        create_app_project()
        monkeypatch.setenv("BUILDKEEP_USER", "alice")
        result = invoke("build", "run", "team/app")
        assert result.exit_code == 0, result.output

    def test_missing_build(self, cli_env) -> None:
        """Deleting an unknown build fails with its error code."""
        create_app_project()
        result = invoke("builds", "delete", "team/app", "7", "--user", "alice")
        assert result.exit_code == 1
        assert "build_not_found" in result.stdout

    def test_workspace_wipe(self, cli_env) -> None:
        """Wiping removes the workspace left by a build."""
        create_app_project()
        invoke("build", "run", "team/app", "--user", "alice")
        result = invoke("workspace", "wipe", "team/app", "--user", "alice")
        assert result.exit_code == 0, result.output
        assert "Removed 1 workspace(s)" in result.stdout
