"""Thin CLI wrapper for buildkeep.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from buildkeep import __version__
from buildkeep.config import get_settings, print_settings_json
from buildkeep.security import ANONYMOUS, Principal

if TYPE_CHECKING:
    from buildkeep.builds.records import Build
    from buildkeep.runtime import Runtime

app = typer.Typer(
    name="buildkeep",
    help="buildkeep - projects, builds, workspaces and build pointers",
    no_args_is_help=True,
)
console = Console()

UserOption = Annotated[
    str | None,
    typer.Option(
        "--user",
        "-u",
        envvar="BUILDKEEP_USER",
        help="Act as this user (anonymous if omitted)",
    ),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"buildkeep version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records through rich at the configured level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """buildkeep - projects, builds, workspaces and build pointers."""
    configure_logging(get_settings().log_level)


def _principal(user: str | None) -> Principal:
    return Principal(user) if user else ANONYMOUS


def _runtime() -> "Runtime":
    from buildkeep.runtime import Runtime

    return Runtime.create(get_settings())


def _fail(error: Exception | str) -> NoReturn:
    code = getattr(error, "code", None)
    prefix = f"{code}: " if code else ""
    console.print(f"[red]{escape(prefix + str(error))}[/red]")
    raise typer.Exit(code=1)


@app.command()
def config(json_output: JsonOption = False) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
        return

    template = settings.builds_dir_template or "(inside each project)"
    roots = ", ".join(str(r) for r in settings.permitted_build_roots) or "(any)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Home directory:      {settings.home_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print(f"  Builds template:     {template}")
    console.print(f"  Permitted roots:     {roots}")
    console.print()
    console.print("[bold]Behaviour:[/bold]")
    console.print(f"  Pointer style:       {settings.pointer_style.value}")
    console.print(f"  Concurrent polling:  {settings.concurrent_polling.value}")
    console.print(f"  Anonymous read:      {settings.anonymous_read}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Concurrency:[/bold]")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print(f"  Build cache size:    {settings.build_cache_size}")
    console.print(f"  Step timeout:        {settings.step_timeout}")


# Folders

folders_app = typer.Typer(help="Manage folders")
app.add_typer(folders_app, name="folders")


@folders_app.command("create")
def folders_create(
    name: Annotated[str, typer.Argument(help="Folder name")],
    parent: Annotated[
        str | None,
        typer.Option("--parent", "-p", help="Parent folder (full name)"),
    ] = None,
    user: UserOption = None,
) -> None:
    """Create a folder."""
    from buildkeep.db import get_session
    from buildkeep.projects.service import (
        FolderNotFoundError,
        ProjectExistsError,
        create_folder,
    )
    from buildkeep.security import AuthorizationError

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            folder = create_folder(
                session,
                name,
                parent,
                principal=_principal(user),
                checker=runtime.checker,
            )
            full_name = folder.full_name
    except (
        AuthorizationError,
        FolderNotFoundError,
        ProjectExistsError,
        ValueError,
    ) as e:
        _fail(e)
    console.print(f"[green]Created folder {full_name}[/green]")


# Projects

projects_app = typer.Typer(help="Manage projects")
app.add_typer(projects_app, name="projects")


@projects_app.command("create")
def projects_create(
    name: Annotated[str, typer.Argument(help="Project name")],
    folder: Annotated[
        str | None,
        typer.Option("--folder", "-f", help="Containing folder (full name)"),
    ] = None,
    steps: Annotated[
        list[str] | None,
        typer.Option("--step", "-s", help="Shell step (can be repeated)"),
    ] = None,
    archive: Annotated[
        list[str] | None,
        typer.Option("--archive", "-a", help="Artifact glob (can be repeated)"),
    ] = None,
    downstream: Annotated[
        list[str] | None,
        typer.Option("--downstream", "-d", help="Project triggered after a build"),
    ] = None,
    threshold: Annotated[
        str,
        typer.Option("--threshold", help="Worst result that triggers downstream"),
    ] = "SUCCESS",
    concurrent: Annotated[
        bool,
        typer.Option("--concurrent", help="Allow concurrent builds"),
    ] = False,
    block_upstream: Annotated[
        bool,
        typer.Option("--block-upstream", help="Wait while upstream builds run"),
    ] = False,
    poll_command: Annotated[
        str | None,
        typer.Option("--poll-command", help="Change detection command"),
    ] = None,
    description: Annotated[
        str | None,
        typer.Option("--description", help="Project description"),
    ] = None,
    user: UserOption = None,
) -> None:
    """Create a project."""
    from pydantic import ValidationError

    from buildkeep.db import get_session
    from buildkeep.projects.schema import ProjectSchema
    from buildkeep.projects.service import (
        FolderNotFoundError,
        ProjectExistsError,
        create_project,
    )
    from buildkeep.security import AuthorizationError

    try:
        schema = ProjectSchema(
            name=name,
            folder=folder,
            description=description,
            concurrent_build=concurrent,
            block_when_upstream_building=block_upstream,
            shell_steps=steps or [],
            archive_patterns=archive or [],
            downstream_projects=downstream or [],
            downstream_threshold=threshold.upper(),
            poll_command=poll_command,
        )
    except ValidationError as e:
        _fail(f"Invalid project: {e}")

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            project = create_project(
                session, schema, principal=_principal(user), checker=runtime.checker
            )
            full_name = project.full_name
    except (
        AuthorizationError,
        FolderNotFoundError,
        ProjectExistsError,
        ValueError,
    ) as e:
        _fail(e)
    console.print(f"[green]Created project {full_name}[/green]")


@projects_app.command("list")
def projects_list(
    folder: Annotated[
        str | None,
        typer.Option("--folder", "-f", help="Only list projects below this folder"),
    ] = None,
    json_output: JsonOption = False,
    user: UserOption = None,
) -> None:
    """List projects the user may read."""
    from buildkeep.db import get_session
    from buildkeep.projects.service import FolderNotFoundError, list_projects
    from buildkeep.security import Permission

    runtime = _runtime()
    principal = _principal(user)
    try:
        with get_session(runtime.session_factory) as session:
            rows = [
                (p.full_name, p.next_build_number - 1, p.description)
                for p in list_projects(session, folder)
                if runtime.checker.check_permission(
                    principal, Permission.READ, p.full_name
                )
            ]
    except FolderNotFoundError as e:
        _fail(e)

    if json_output:
        output = [
            {"full_name": n, "last_build_number": last, "description": d}
            for n, last, d in rows
        ]
        console.print_json(data=output)
        return
    if not rows:
        console.print("[yellow]No projects found[/yellow]")
        return
    console.print(f"[bold]Found {len(rows)} project(s):[/bold]")
    for full_name, last, description in rows:
        suffix = f" - {description}" if description else ""
        console.print(f"  [green]{full_name}[/green] (builds: {last}){suffix}")


@projects_app.command("show")
def projects_show(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    json_output: JsonOption = False,
    user: UserOption = None,
) -> None:
    """Show the definition of a project."""
    from buildkeep.db import get_session
    from buildkeep.projects.io import project_to_json_string, project_to_yaml_string
    from buildkeep.projects.service import (
        ProjectNotFoundError,
        get_project,
        project_to_schema,
    )
    from buildkeep.security import AuthorizationError, Permission, require_permission

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            require_permission(
                runtime.checker, _principal(user), Permission.READ, full_name
            )
            schema = project_to_schema(project)
    except (AuthorizationError, ProjectNotFoundError) as e:
        _fail(e)

    if json_output:
        console.print_json(project_to_json_string(schema))
    else:
        console.print(project_to_yaml_string(schema), markup=False)


@projects_app.command("configure")
def projects_configure(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    path: Annotated[Path, typer.Argument(help="Project definition (YAML/JSON)")],
    user: UserOption = None,
) -> None:
    """Replace a project's configuration from a definition file."""
    from pydantic import ValidationError

    from buildkeep.db import get_session
    from buildkeep.projects.io import load_project
    from buildkeep.projects.service import (
        ProjectNotFoundError,
        configure_project,
        get_project,
    )
    from buildkeep.security import AuthorizationError

    runtime = _runtime()
    try:
        schema = load_project(path)
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            configure_project(
                session,
                project,
                schema,
                principal=_principal(user),
                checker=runtime.checker,
            )
    except ValidationError as e:
        _fail(f"Invalid project definition: {e}")
    except (AuthorizationError, ProjectNotFoundError, ValueError, OSError) as e:
        _fail(e)
    console.print(f"[green]Configured {full_name}[/green]")


@projects_app.command("upstream")
def projects_upstream(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    upstream: Annotated[
        list[str] | None,
        typer.Option("--from", help="Upstream project (can be repeated)"),
    ] = None,
    user: UserOption = None,
) -> None:
    """Set the projects that trigger this project."""
    from buildkeep.db import get_session
    from buildkeep.projects.service import (
        ProjectNotFoundError,
        get_project,
        set_upstream_projects,
    )

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            changed = set_upstream_projects(
                session,
                project,
                upstream or [],
                principal=_principal(user),
                checker=runtime.checker,
            )
    except ProjectNotFoundError as e:
        _fail(e)
    if changed:
        console.print(f"[green]Updated: {', '.join(changed)}[/green]")
    else:
        console.print("[yellow]No upstream project changed[/yellow]")


@projects_app.command("rename")
def projects_rename(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    new_name: Annotated[str, typer.Argument(help="New project name")],
    user: UserOption = None,
) -> None:
    """Rename a project, moving its builds and pointers."""
    from buildkeep.builds.store import BuildStoreError
    from buildkeep.db import get_session
    from buildkeep.projects.cascade import CascadeCoordinator, ProjectBusyError
    from buildkeep.projects.service import (
        ProjectExistsError,
        ProjectNotFoundError,
        get_project,
    )
    from buildkeep.security import AuthorizationError

    runtime = _runtime()
    coordinator = CascadeCoordinator(runtime)
    try:
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            coordinator.rename_project(session, project, new_name, _principal(user))
            renamed = project.full_name
    except (
        AuthorizationError,
        BuildStoreError,
        ProjectBusyError,
        ProjectExistsError,
        ProjectNotFoundError,
        ValueError,
    ) as e:
        _fail(e)
    console.print(f"[green]Renamed {full_name} to {renamed}[/green]")


@projects_app.command("move")
def projects_move(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    to: Annotated[
        str | None,
        typer.Option("--to", "-t", help="Destination folder (omit for top level)"),
    ] = None,
    user: UserOption = None,
) -> None:
    """Move a project to another folder."""
    from buildkeep.builds.store import BuildStoreError
    from buildkeep.db import get_session
    from buildkeep.projects.cascade import CascadeCoordinator, ProjectBusyError
    from buildkeep.projects.service import (
        FolderNotFoundError,
        ProjectExistsError,
        ProjectNotFoundError,
        get_folder,
        get_project,
    )
    from buildkeep.security import AuthorizationError

    runtime = _runtime()
    coordinator = CascadeCoordinator(runtime)
    try:
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            folder = get_folder(session, to)
            coordinator.move_project(session, project, folder, _principal(user))
            moved = project.full_name
    except (
        AuthorizationError,
        BuildStoreError,
        FolderNotFoundError,
        ProjectBusyError,
        ProjectExistsError,
        ProjectNotFoundError,
    ) as e:
        _fail(e)
    console.print(f"[green]Moved {full_name} to {moved}[/green]")


@projects_app.command("delete")
def projects_delete(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
    user: UserOption = None,
) -> None:
    """Delete a project with all of its builds."""
    from buildkeep.db import get_session
    from buildkeep.projects.cascade import (
        CascadeCoordinator,
        PartialDeletionError,
        ProjectBusyError,
    )
    from buildkeep.projects.service import ProjectNotFoundError, get_project
    from buildkeep.security import AuthorizationError

    if not yes:
        typer.confirm(f"Delete {full_name} and all of its builds?", abort=True)

    runtime = _runtime()
    coordinator = CascadeCoordinator(runtime)
    try:
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            outcome = coordinator.delete_project(session, project, _principal(user))
    except (
        AuthorizationError,
        PartialDeletionError,
        ProjectBusyError,
        ProjectNotFoundError,
    ) as e:
        _fail(e)
    count = outcome.details.get("builds_deleted", 0)
    console.print(f"[green]Deleted {full_name} ({count} build(s))[/green]")


@projects_app.command("import")
def projects_import(
    path: Annotated[Path, typer.Argument(help="Definition file or directory")],
    update: Annotated[
        bool,
        typer.Option("--update", help="Update existing projects"),
    ] = False,
    pattern: Annotated[
        str,
        typer.Option("--pattern", "-p", help="Glob pattern for directory import"),
    ] = "*.yaml",
    user: UserOption = None,
) -> None:
    """Import projects from YAML/JSON file(s)."""
    from buildkeep.db import get_session
    from buildkeep.projects.service import (
        import_project_from_file,
        import_projects_from_directory,
    )
    from buildkeep.security import AuthorizationError

    if not path.exists():
        _fail(f"Path not found: {path}")

    runtime = _runtime()
    principal = _principal(user)
    try:
        with get_session(runtime.session_factory) as session:
            if path.is_dir():
                result = import_projects_from_directory(
                    session,
                    path,
                    principal=principal,
                    checker=runtime.checker,
                    pattern=pattern,
                    update_existing=update,
                )
                results = result.results
            else:
                results = [
                    import_project_from_file(
                        session,
                        path,
                        principal=principal,
                        checker=runtime.checker,
                        update_existing=update,
                    )
                ]
    except AuthorizationError as e:
        _fail(e)

    failed = [r for r in results if not r.success]
    for r in results:
        if r.success:
            action = "Created" if r.created else "Updated"
            console.print(f"[green]{action} project: {r.full_name}[/green]")
        else:
            console.print(f"[red]Failed {r.full_name}: {escape(r.error or '')}[/red]")
    if failed:
        raise typer.Exit(code=1)


@projects_app.command("export")
def projects_export(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    path: Annotated[Path, typer.Argument(help="Output file (.yaml/.yml/.json)")],
) -> None:
    """Export a project definition to a file."""
    from buildkeep.db import get_session
    from buildkeep.projects.service import ProjectNotFoundError, export_project_to_file

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            export_project_to_file(session, full_name, path)
    except (ProjectNotFoundError, ValueError) as e:
        _fail(e)
    console.print(f"[green]Exported {full_name} to {path}[/green]")


# Builds

build_app = typer.Typer(help="Run builds")
app.add_typer(build_app, name="build")


@build_app.command("run")
def build_run(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    cause: Annotated[
        str,
        typer.Option("--cause", "-c", help="Reason recorded with the build"),
    ] = "cli",
    user: UserOption = None,
) -> None:
    """Build a project and wait for it (and triggered builds) to finish."""
    from buildkeep.builds.runner import BuildExecutionError
    from buildkeep.builds.service import BuildScheduler
    from buildkeep.builds.store import BuildStoreError
    from buildkeep.db import get_session
    from buildkeep.projects.service import ProjectNotFoundError, get_project
    from buildkeep.security import AuthorizationError
    from buildkeep.types import Result
    from buildkeep.workspace.lock import LockCancelledError

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            project_id = get_project(session, full_name).id
    except ProjectNotFoundError as e:
        _fail(e)

    scheduler = BuildScheduler(runtime)
    try:
        future = scheduler.schedule_build(project_id, cause, _principal(user))
        build = future.result()
        scheduler.wait_for_idle()
    except (
        AuthorizationError,
        BuildExecutionError,
        BuildStoreError,
        LockCancelledError,
    ) as e:
        _fail(e)
    finally:
        scheduler.shutdown()

    color = "green" if build.result is Result.SUCCESS else "red"
    console.print(
        f"[{color}]{full_name} #{build.number}: {build.result.value}[/{color}]"
    )
    console.print(f"  Log: {build.log_path}")
    if not build.result.is_better_or_equal(Result.UNSTABLE):
        raise typer.Exit(code=1)


builds_app = typer.Typer(help="Inspect and delete builds")
app.add_typer(builds_app, name="builds")


def _build_to_dict(build: "Build") -> dict[str, object]:
    return {
        "number": build.number,
        "id": build.id,
        **build.record.model_dump(mode="json", exclude={"number"}),
        "directory": str(build.root_dir),
    }


@builds_app.command("list")
def builds_list(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of builds to return"),
    ] = 100,
    json_output: JsonOption = False,
    user: UserOption = None,
) -> None:
    """List a project's builds, newest first."""
    from buildkeep.builds.service import list_builds
    from buildkeep.db import get_session
    from buildkeep.projects.service import ProjectNotFoundError, get_project
    from buildkeep.security import AuthorizationError, Permission, require_permission

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            require_permission(
                runtime.checker, _principal(user), Permission.READ, full_name
            )
            builds = list_builds(runtime, project, limit=limit)
    except (AuthorizationError, ProjectNotFoundError) as e:
        _fail(e)

    if json_output:
        console.print_json(data=[_build_to_dict(b) for b in builds])
        return
    if not builds:
        console.print("[yellow]No builds found[/yellow]")
        return
    console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
    for b in builds:
        color = {
            "SUCCESS": "green",
            "UNSTABLE": "yellow",
            "FAILURE": "red",
            "ABORTED": "white",
        }.get(b.result.value, "blue")
        started = b.record.started_at.isoformat() if b.record.started_at else "N/A"
        console.print(f"  [{color}]#{b.number} {b.result.value}[/{color}] {started}")


@builds_app.command("show")
def builds_show(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    number: Annotated[int, typer.Argument(help="Build number")],
    log: Annotated[bool, typer.Option("--log", help="Print the build log")] = False,
    json_output: JsonOption = False,
    user: UserOption = None,
) -> None:
    """Show a build record."""
    from buildkeep.builds.service import get_build
    from buildkeep.builds.store import BuildNotFoundError
    from buildkeep.db import get_session
    from buildkeep.projects.service import ProjectNotFoundError, get_project
    from buildkeep.security import AuthorizationError, Permission, require_permission

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            require_permission(
                runtime.checker, _principal(user), Permission.READ, full_name
            )
            build = get_build(runtime, project, number)
    except (AuthorizationError, BuildNotFoundError, ProjectNotFoundError) as e:
        _fail(e)

    if json_output:
        console.print_json(data=_build_to_dict(build))
    else:
        console.print(f"[bold]{full_name} #{build.number}[/bold]")
        console.print(f"  Result:    {build.result.value}")
        console.print(f"  Cause:     {build.record.cause}")
        console.print(f"  Directory: {build.root_dir}")
        console.print(f"  Workspace: {build.workspace or 'N/A'}")
        if build.record.error_message:
            console.print(f"  Error:     {build.record.error_message}")
        for artifact in build.record.artifacts:
            console.print(
                f"  Artifact:  {artifact.relative_path} ({artifact.size_bytes} bytes)"
            )
    if log and build.log_path.exists():
        console.print(build.log_path.read_text(encoding="utf-8"), markup=False)


@builds_app.command("delete")
def builds_delete(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    number: Annotated[int, typer.Argument(help="Build number")],
    user: UserOption = None,
) -> None:
    """Delete a build and repair the project's pointers."""
    from buildkeep.builds.store import BuildNotFoundError
    from buildkeep.db import get_session
    from buildkeep.projects.cascade import (
        CascadeCoordinator,
        PartialDeletionError,
        ProjectBusyError,
    )
    from buildkeep.projects.service import ProjectNotFoundError, get_project
    from buildkeep.security import AuthorizationError

    runtime = _runtime()
    coordinator = CascadeCoordinator(runtime)
    try:
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            outcome = coordinator.delete_build(
                session, project, number, _principal(user)
            )
    except (
        AuthorizationError,
        BuildNotFoundError,
        PartialDeletionError,
        ProjectBusyError,
        ProjectNotFoundError,
    ) as e:
        _fail(e)
    console.print(f"[green]Deleted {full_name} #{number}[/green]")
    for name, target in outcome.details.get("repaired", {}).items():
        console.print(f"  {name.value} -> {target if target is not None else '(none)'}")


# Pointers and workspaces

pointers_app = typer.Typer(help="Inspect named build pointers")
app.add_typer(pointers_app, name="pointers")


@pointers_app.command("show")
def pointers_show(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    json_output: JsonOption = False,
    user: UserOption = None,
) -> None:
    """Resolve a project's named pointers, repairing dangling ones."""
    from buildkeep.db import get_session
    from buildkeep.projects.service import ProjectNotFoundError, get_project
    from buildkeep.security import AuthorizationError, Permission, require_permission
    from buildkeep.types import PointerName

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            project = get_project(session, full_name)
            require_permission(
                runtime.checker, _principal(user), Permission.READ, full_name
            )
            location = runtime.resolver.locate(project)
            with runtime.mutation_locks.hold(project.id):
                targets = {
                    name.value: runtime.pointers.resolve(location, name)
                    for name in PointerName
                }
    except (AuthorizationError, ProjectNotFoundError) as e:
        _fail(e)

    if json_output:
        console.print_json(data=targets)
        return
    for name, target in targets.items():
        shown = f"#{target}" if target is not None else "[yellow](none)[/yellow]"
        console.print(f"  {name:<22} {shown}")


workspace_app = typer.Typer(help="Manage project workspaces")
app.add_typer(workspace_app, name="workspace")


@workspace_app.command("wipe")
def workspace_wipe(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    user: UserOption = None,
) -> None:
    """Remove a project's workspaces once no poll or build uses them."""
    from buildkeep.builds.service import BuildScheduler
    from buildkeep.db import get_session
    from buildkeep.projects.service import ProjectNotFoundError, get_project
    from buildkeep.security import AuthorizationError

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            project_id = get_project(session, full_name).id
    except ProjectNotFoundError as e:
        _fail(e)

    scheduler = BuildScheduler(runtime, max_workers=1)
    try:
        removed = scheduler.wipe_out_workspace(project_id, _principal(user))
    except AuthorizationError as e:
        _fail(e)
    finally:
        scheduler.shutdown()
    console.print(f"[green]Removed {len(removed)} workspace(s) of {full_name}[/green]")


@app.command()
def poll(
    full_name: Annotated[str, typer.Argument(help="Project full name")],
    build: Annotated[
        bool,
        typer.Option("--build", "-b", help="Build when changes are found"),
    ] = False,
    user: UserOption = None,
) -> None:
    """Check a project for source changes."""
    from buildkeep.builds.service import BuildScheduler
    from buildkeep.db import get_session
    from buildkeep.projects.service import ProjectNotFoundError, get_project
    from buildkeep.security import AuthorizationError
    from buildkeep.workspace.lock import LockCancelledError

    runtime = _runtime()
    try:
        with get_session(runtime.session_factory) as session:
            project_id = get_project(session, full_name).id
    except ProjectNotFoundError as e:
        _fail(e)

    scheduler = BuildScheduler(runtime)
    try:
        changed = scheduler.poll_changes(project_id)
        if not changed:
            console.print(f"[yellow]No changes in {full_name}[/yellow]")
            return
        console.print(f"[green]Changes found in {full_name}[/green]")
        if build:
            result = scheduler.schedule_build(
                project_id, "source change", _principal(user)
            ).result()
            scheduler.wait_for_idle()
            console.print(f"  Build #{result.number}: {result.result.value}")
    except (AuthorizationError, LockCancelledError) as e:
        _fail(e)
    finally:
        scheduler.shutdown()


if __name__ == "__main__":
    app()
