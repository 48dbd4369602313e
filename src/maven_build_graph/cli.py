"""Typer CLI entry point for maven-build-graph."""

from __future__ import annotations

import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from maven_build_graph.config import StoreConfig
from maven_build_graph.exceptions import BuildGraphError
from maven_build_graph.models import ArtifactCoordinate
from maven_build_graph.store import BuildGraphStore
from maven_build_graph.visualize import (
    build_artifacts_table,
    build_dependency_tree,
    build_downstream_tree,
    build_jobs_table,
)

app = typer.Typer(add_completion=False, help="Query the Maven build graph store.")
console = Console()

DbUrlOption = Annotated[
    str | None,
    typer.Option("--db-url", help="Database URL. Defaults to $MBG_DB_URL, then a local SQLite file."),
]


def _open_store(db_url: str | None) -> BuildGraphStore:
    config = StoreConfig.from_env()
    if db_url:
        config.url = db_url
    return BuildGraphStore(config)


def _fail(exc: Exception) -> typer.Exit:
    console.print(f"[bold red]Error:[/bold red] {exc}")
    return typer.Exit(code=1)


@app.callback()
def configure(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log store activity.")] = False,
) -> None:
    """Query the Maven build graph store.

    Connection settings come from the MBG_* environment variables.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
        force=True,
    )


@app.command()
def info(db_url: DbUrlOption = None) -> None:
    """Show the backend, the schema version and the table sizes."""
    try:
        with _open_store(db_url) as store:
            console.print(store.diagnostics.to_pretty_string())
            if not store.diagnostics.is_production_grade():
                console.print(
                    "[bold yellow]Warning:[/bold yellow] the embedded database is not suited for this "
                    "amount of data, consider PostgreSQL or MySQL."
                )
    except BuildGraphError as exc:
        raise _fail(exc) from None


@app.command()
def migrate(db_url: DbUrlOption = None) -> None:
    """Create or upgrade the database schema."""
    try:
        with _open_store(db_url) as store:
            result = store.migration
    except BuildGraphError as exc:
        raise _fail(exc) from None

    if result.applied:
        console.print(
            f"[green]Migrated[/green] schema from version {result.initial_version} to {result.final_version}."
        )
    else:
        console.print(f"Schema is up to date at version {result.final_version}.")


@app.command()
def dependencies(
    job: Annotated[str, typer.Argument(help="Job full name.")],
    build: Annotated[int, typer.Argument(help="Build number.")],
    db_url: DbUrlOption = None,
) -> None:
    """Show the dependencies recorded for a build."""
    try:
        with _open_store(db_url) as store:
            deps = store.queries.list_dependencies(job, build)
    except BuildGraphError as exc:
        raise _fail(exc) from None
    console.print(build_dependency_tree(job, build, deps))


@app.command()
def generated(
    job: Annotated[str, typer.Argument(help="Job full name.")],
    build: Annotated[int, typer.Argument(help="Build number.")],
    db_url: DbUrlOption = None,
) -> None:
    """Show the artifacts generated by a build."""
    try:
        with _open_store(db_url) as store:
            artifacts = store.queries.get_generated_artifacts(job, build)
    except BuildGraphError as exc:
        raise _fail(exc) from None
    console.print(build_artifacts_table(f"Artifacts generated by {job}#{build}", artifacts))


@app.command()
def downstream(
    job: Annotated[str, typer.Argument(help="Job full name.")],
    build: Annotated[int, typer.Argument(help="Build number.")],
    by_artifact: Annotated[bool, typer.Option("--by-artifact", help="Group jobs by generated artifact.")] = False,
    db_url: DbUrlOption = None,
) -> None:
    """Show the jobs depending on the artifacts of a build."""
    try:
        with _open_store(db_url) as store:
            if by_artifact:
                grouped = store.queries.list_downstream_jobs_by_artifact(job, build)
            else:
                jobs = store.queries.list_downstream_jobs(job, build)
    except BuildGraphError as exc:
        raise _fail(exc) from None

    if by_artifact:
        console.print(build_downstream_tree(job, build, grouped))
        return

    table = Table(title=f"Downstream jobs of {job}#{build}")
    table.add_column("#", style="dim", width=6)
    table.add_column("Job")
    for i, name in enumerate(sorted(jobs), start=1):
        table.add_row(str(i), name)
    console.print(table)
    if not jobs:
        console.print("[dim]No downstream jobs found.[/dim]")


@app.command()
def consumers(
    coordinate: Annotated[str, typer.Argument(help="Artifact: groupId:artifactId[:type]:version")],
    classifier: Annotated[str | None, typer.Option("--classifier", help="Artifact classifier.")] = None,
    base_version: Annotated[
        str | None, typer.Option("--base-version", help="Match this base version instead.")
    ] = None,
    db_url: DbUrlOption = None,
) -> None:
    """Show the jobs whose latest successful build depends on an artifact."""
    try:
        target = ArtifactCoordinate.parse(coordinate).model_copy(update={"classifier": classifier or None})
    except ValueError as exc:
        raise _fail(exc) from None

    try:
        with _open_store(db_url) as store:
            jobs = store.queries.list_downstream_jobs_by_coordinate(target, base_version=base_version)
    except BuildGraphError as exc:
        raise _fail(exc) from None

    table = Table(title=f"Consumers of {target.id}")
    table.add_column("#", style="dim", width=6)
    table.add_column("Job")
    for i, name in enumerate(sorted(jobs), start=1):
        table.add_row(str(i), name)
    console.print(table)


@app.command()
def upstream(
    job: Annotated[str, typer.Argument(help="Job full name.")],
    build: Annotated[int, typer.Argument(help="Build number.")],
    transitive: Annotated[bool, typer.Option("--transitive", help="Follow upstream jobs of upstream jobs.")] = False,
    depth: Annotated[
        int | None, typer.Option("--depth", min=1, help="Hop bound for --transitive.")
    ] = None,
    db_url: DbUrlOption = None,
) -> None:
    """Show the upstream builds a build depends on."""
    try:
        with _open_store(db_url) as store:
            if transitive:
                jobs = store.queries.list_transitive_upstream_jobs(job, build, max_depth=depth)
            else:
                jobs = store.queries.list_upstream_jobs(job, build)
    except BuildGraphError as exc:
        raise _fail(exc) from None

    kind = "Transitive upstream" if transitive else "Upstream"
    console.print(build_jobs_table(f"{kind} jobs of {job}#{build}", jobs))
    if not jobs:
        console.print("[dim]No upstream jobs found.[/dim]")


@app.command()
def cleanup(db_url: DbUrlOption = None) -> None:
    """Delete the artifacts no build refers to anymore."""
    try:
        with _open_store(db_url) as store:
            deleted = store.recorder.cleanup()
    except BuildGraphError as exc:
        raise _fail(exc) from None
    console.print(f"[green]Deleted[/green] {deleted} unreferenced artifact(s).")


def main() -> None:
    """Console-script entry point."""
    app()
