"""Rich rendering utilities for build graph query results."""

from __future__ import annotations

from rich.table import Table
from rich.tree import Tree

from maven_build_graph.models import MavenArtifact, MavenDependency


def build_dependency_tree(job_full_name: str, build_number: int, dependencies: list[MavenDependency]) -> Tree:
    """Build a Rich Tree of the dependencies recorded for a build.

    Args:
        job_full_name: Full name of the job.
        build_number: Number of the build.
        dependencies: Dependencies as returned by `list_dependencies`.

    Returns:
        A Rich Tree object for rendering.
    """
    root = Tree(f"[bold]{job_full_name}#{build_number}[/bold]")
    if not dependencies:
        root.add("[dim]No dependencies recorded[/dim]")
        return root

    deps_branch = root.add("dependencies")
    for dep in dependencies:
        label = dep.label()
        deps_branch.add(f"[dim]{label}[/dim]" if dep.ignore_upstream_triggers else label)
    return root


def build_downstream_tree(
    job_full_name: str, build_number: int, downstream: dict[MavenArtifact, set[str]]
) -> Tree:
    """Build a Rich Tree of downstream jobs, one branch per generated artifact.

    Args:
        job_full_name: Full name of the producing job.
        build_number: Number of the producing build.
        downstream: Result of `list_downstream_jobs_by_artifact`.

    Returns:
        A Rich Tree object for rendering.
    """
    root = Tree(f"[bold]{job_full_name}#{build_number}[/bold]")
    if not downstream:
        root.add("[dim]No downstream jobs found[/dim]")
        return root

    for artifact in sorted(downstream):
        branch = root.add(artifact.short_description)
        for job in sorted(downstream[artifact]):
            branch.add(f"[green]{job}[/green]")
    return root


def build_jobs_table(title: str, jobs: dict[str, int]) -> Table:
    table = Table(title=title)
    table.add_column("#", style="dim", width=6)
    table.add_column("Job")
    table.add_column("Build", justify="right")
    for i, name in enumerate(sorted(jobs), start=1):
        table.add_row(str(i), name, str(jobs[name]))
    return table


def build_artifacts_table(title: str, artifacts: list[MavenArtifact]) -> Table:
    table = Table(title=title)
    table.add_column("Artifact")
    table.add_column("File")
    table.add_column("URL", overflow="fold")
    for artifact in artifacts:
        table.add_row(artifact.short_description, artifact.file_name, artifact.url or "[dim]not deployed[/dim]")
    return table
