"""Read API of the store: which jobs are upstream or downstream of a build.

A job B is downstream of a build of job A when the latest successful build of
B depends, directly or through its parent POM, on an artifact that A's build
generated. Dependencies match the generated artifact on its base version, so
`1.0-SNAPSHOT` matches a build that deployed `1.0-20240101.000000-1`.

The latest successful build is read from the job's denormalized
`last_successful_build_number`, never recomputed from the builds.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Any

from sqlalchemy import and_, false
from sqlalchemy.engine import Engine
from sqlalchemy.orm import aliased
from sqlmodel import Session, select

from maven_build_graph.db import sql_errors
from maven_build_graph.db_models import (
    Artifact,
    Build,
    DependencyEdge,
    GeneratedArtifactEdge,
    Job,
    ParentProjectEdge,
)
from maven_build_graph.diagnostics import FIND, OperationStats, monitored
from maven_build_graph.identity import IdentityResolver, classifier_matches, find_job
from maven_build_graph.models import ArtifactCoordinate, JobSummary, MavenArtifact, MavenDependency

logger = logging.getLogger(__name__)

# Edges through which a build consumes an artifact.
CONSUMING_EDGES = (DependencyEdge, ParentProjectEdge)

UpstreamFrontier = deque[tuple[str, int, int]]


def _generated_artifact(row: Any) -> MavenArtifact:
    return MavenArtifact(
        group_id=row.group_id,
        artifact_id=row.artifact_id,
        base_version=row.version,
        version=row.resolved_version or row.version,
        type=row.type,
        classifier=row.classifier,
        extension=row.extension,
        repository_url=row.repository_url,
    )


class GraphQueryEngine:
    """Upstream and downstream queries over the recorded builds.

    Args:
        engine: Engine of the store database.
        identity: Resolver for the server instance key.
        statistics: Collector the find calls are timed into.
        max_upstream_recursion_depth: Default hop bound of
            `list_transitive_upstream_jobs`.
    """

    def __init__(
        self,
        engine: Engine,
        identity: IdentityResolver,
        statistics: OperationStats,
        max_upstream_recursion_depth: int = 3,
    ) -> None:
        self.engine = engine
        self.identity = identity
        self.statistics = statistics
        self.max_upstream_recursion_depth = max_upstream_recursion_depth

    @monitored(FIND)
    def get_job(self, job_full_name: str) -> JobSummary | None:
        server_instance_id = self.identity.server_instance_key()
        with sql_errors(f"get job {job_full_name}"), Session(self.engine) as session:
            job = find_job(session, server_instance_id, job_full_name)
            if job is None:
                return None
            return JobSummary(
                full_name=job.full_name,
                last_build_number=job.last_build_number,
                last_successful_build_number=job.last_successful_build_number,
            )

    @monitored(FIND)
    def list_dependencies(self, job_full_name: str, build_number: int) -> list[MavenDependency]:
        """List the dependencies recorded for a build, trigger flags ignored.

        Args:
            job_full_name: Full name of the job.
            build_number: Number of the build.

        Returns:
            The dependencies, sorted by coordinate.
        """
        server_instance_id = self.identity.server_instance_key()
        statement = (
            select(
                Artifact.group_id,
                Artifact.artifact_id,
                Artifact.version,
                Artifact.type,
                Artifact.classifier,
                DependencyEdge.scope,
                DependencyEdge.ignore_upstream_triggers,
            )
            .select_from(Job)
            .join(Build, Build.job_id == Job.id)
            .join(DependencyEdge, DependencyEdge.build_id == Build.id)
            .join(Artifact, Artifact.id == DependencyEdge.artifact_id)
            .where(
                Job.full_name == job_full_name,
                Job.server_instance_id == server_instance_id,
                Build.number == build_number,
            )
        )
        with sql_errors(f"list dependencies of {job_full_name}#{build_number}"), Session(self.engine) as session:
            rows = session.exec(statement).all()
        return sorted(
            MavenDependency(
                coordinate=ArtifactCoordinate(
                    group_id=row.group_id,
                    artifact_id=row.artifact_id,
                    version=row.version,
                    type=row.type,
                    classifier=row.classifier,
                ),
                scope=row.scope,
                ignore_upstream_triggers=bool(row.ignore_upstream_triggers),
            )
            for row in rows
        )

    @monitored(FIND)
    def get_generated_artifacts(self, job_full_name: str, build_number: int) -> list[MavenArtifact]:
        """List the artifacts a build generated, trigger flags ignored.

        Returns:
            The artifacts, sorted by coordinate.
        """
        server_instance_id = self.identity.server_instance_key()
        statement = (
            select(
                Artifact.group_id,
                Artifact.artifact_id,
                Artifact.version,
                Artifact.type,
                Artifact.classifier,
                GeneratedArtifactEdge.version.label("resolved_version"),
                GeneratedArtifactEdge.extension,
                GeneratedArtifactEdge.repository_url,
            )
            .select_from(Job)
            .join(Build, Build.job_id == Job.id)
            .join(GeneratedArtifactEdge, GeneratedArtifactEdge.build_id == Build.id)
            .join(Artifact, Artifact.id == GeneratedArtifactEdge.artifact_id)
            .where(
                Job.full_name == job_full_name,
                Job.server_instance_id == server_instance_id,
                Build.number == build_number,
            )
        )
        with sql_errors(f"get generated artifacts of {job_full_name}#{build_number}"), Session(self.engine) as session:
            rows = session.exec(statement).all()
        return sorted(_generated_artifact(row) for row in rows)

    @monitored(FIND)
    def list_downstream_jobs(self, job_full_name: str, build_number: int) -> set[str]:
        """Return the jobs to rebuild after a build, all artifacts together."""
        by_artifact = self._downstream_jobs_by_artifact(job_full_name, build_number)
        return set().union(*by_artifact.values())

    @monitored(FIND)
    def list_downstream_jobs_by_artifact(
        self, job_full_name: str, build_number: int
    ) -> dict[MavenArtifact, set[str]]:
        """Return the jobs to rebuild after a build, grouped by generated artifact.

        Artifacts flagged `skip_downstream_triggers` and dependencies flagged
        `ignore_upstream_triggers` are left out. The producing job is never
        its own downstream job, and artifacts nobody consumes are absent.

        Args:
            job_full_name: Full name of the producing job.
            build_number: Number of the producing build.

        Returns:
            Consuming job names per generated artifact.
        """
        return self._downstream_jobs_by_artifact(job_full_name, build_number)

    def _downstream_jobs_by_artifact(self, job_full_name: str, build_number: int) -> dict[MavenArtifact, set[str]]:
        server_instance_id = self.identity.server_instance_key()
        upstream_job = aliased(Job)
        upstream_build = aliased(Build)
        downstream_job = aliased(Job)
        downstream_build = aliased(Build)

        result: dict[MavenArtifact, set[str]] = {}
        with sql_errors(f"list downstream jobs of {job_full_name}#{build_number}"), Session(self.engine) as session:
            for edge in CONSUMING_EDGES:
                statement = (
                    select(
                        Artifact.group_id,
                        Artifact.artifact_id,
                        Artifact.version,
                        Artifact.type,
                        Artifact.classifier,
                        GeneratedArtifactEdge.version.label("resolved_version"),
                        GeneratedArtifactEdge.extension,
                        GeneratedArtifactEdge.repository_url,
                        downstream_job.full_name,
                    )
                    .select_from(upstream_job)
                    .join(upstream_build, upstream_build.job_id == upstream_job.id)
                    .join(GeneratedArtifactEdge, GeneratedArtifactEdge.build_id == upstream_build.id)
                    .join(Artifact, Artifact.id == GeneratedArtifactEdge.artifact_id)
                    .join(edge, edge.artifact_id == Artifact.id)
                    .join(downstream_build, downstream_build.id == edge.build_id)
                    .join(
                        downstream_job,
                        and_(
                            downstream_job.id == downstream_build.job_id,
                            downstream_job.last_successful_build_number == downstream_build.number,
                        ),
                    )
                    .where(
                        upstream_job.full_name == job_full_name,
                        upstream_job.server_instance_id == server_instance_id,
                        upstream_build.number == build_number,
                        GeneratedArtifactEdge.skip_downstream_triggers == false(),
                        edge.ignore_upstream_triggers == false(),
                        downstream_job.server_instance_id == server_instance_id,
                    )
                )
                for row in session.exec(statement):
                    result.setdefault(_generated_artifact(row), set()).add(row.full_name)

        for jobs in result.values():
            jobs.discard(job_full_name)
        return {artifact: jobs for artifact, jobs in result.items() if jobs}

    @monitored(FIND)
    def list_downstream_jobs_by_coordinate(
        self, coordinate: ArtifactCoordinate, base_version: str | None = None
    ) -> set[str]:
        """Return the jobs whose latest successful build depends on an artifact.

        The producing build does not matter. A missing classifier only matches
        dependencies declared without classifier.

        Args:
            coordinate: Coordinate of the artifact.
            base_version: Base version to match instead of `coordinate.version`,
                for a coordinate carrying a resolved snapshot version.

        Returns:
            The consuming job names.
        """
        server_instance_id = self.identity.server_instance_key()
        version = base_version or coordinate.version
        jobs: set[str] = set()
        with sql_errors(f"list downstream jobs of {coordinate.id}"), Session(self.engine) as session:
            for edge in CONSUMING_EDGES:
                statement = (
                    select(Job.full_name)
                    .select_from(Artifact)
                    .join(edge, edge.artifact_id == Artifact.id)
                    .join(Build, Build.id == edge.build_id)
                    .join(
                        Job,
                        and_(Job.id == Build.job_id, Job.last_successful_build_number == Build.number),
                    )
                    .where(
                        Artifact.group_id == coordinate.group_id,
                        Artifact.artifact_id == coordinate.artifact_id,
                        Artifact.version == version,
                        Artifact.type == coordinate.type,
                        classifier_matches(Artifact.classifier, coordinate.classifier),
                        edge.ignore_upstream_triggers == false(),
                        Job.server_instance_id == server_instance_id,
                    )
                    .distinct()
                )
                jobs.update(session.exec(statement).all())
        return jobs

    @monitored(FIND)
    def list_upstream_jobs(self, job_full_name: str, build_number: int) -> dict[str, int]:
        """Return the upstream builds a build depends on.

        Each upstream job is represented by its latest successful build.

        Args:
            job_full_name: Full name of the consuming job.
            build_number: Number of the consuming build.

        Returns:
            Latest successful build number per upstream job name.
        """
        return self._upstream_jobs(job_full_name, build_number)

    def _upstream_jobs(self, job_full_name: str, build_number: int) -> dict[str, int]:
        server_instance_id = self.identity.server_instance_key()
        upstream_job = aliased(Job)
        upstream_build = aliased(Build)
        downstream_build = aliased(Build)

        result: dict[str, int] = {}
        with sql_errors(f"list upstream jobs of {job_full_name}#{build_number}"), Session(self.engine) as session:
            downstream_job = find_job(session, server_instance_id, job_full_name)
            if downstream_job is None:
                return result
            for edge in CONSUMING_EDGES:
                statement = (
                    select(upstream_job.full_name, upstream_build.number)
                    .select_from(downstream_build)
                    .join(edge, edge.build_id == downstream_build.id)
                    .join(Artifact, Artifact.id == edge.artifact_id)
                    .join(GeneratedArtifactEdge, GeneratedArtifactEdge.artifact_id == Artifact.id)
                    .join(upstream_build, upstream_build.id == GeneratedArtifactEdge.build_id)
                    .join(
                        upstream_job,
                        and_(
                            upstream_job.id == upstream_build.job_id,
                            upstream_job.last_successful_build_number == upstream_build.number,
                        ),
                    )
                    .where(
                        downstream_build.job_id == downstream_job.id,
                        downstream_build.number == build_number,
                        edge.ignore_upstream_triggers == false(),
                        GeneratedArtifactEdge.skip_downstream_triggers == false(),
                        upstream_job.server_instance_id == server_instance_id,
                    )
                )
                for name, number in session.exec(statement):
                    result[name] = number

        result.pop(job_full_name, None)
        return result

    @monitored(FIND)
    def list_transitive_upstream_jobs(
        self, job_full_name: str, build_number: int, max_depth: int | None = None
    ) -> dict[str, int]:
        """Return the upstream builds of a build, following upstreams of upstreams.

        Direct upstream jobs are one hop away. Jobs up to `max_depth` hops away
        are reported, each once, and the queried job never is, so cycles and
        diamonds terminate.

        Args:
            job_full_name: Full name of the consuming job.
            build_number: Number of the consuming build.
            max_depth: Hop bound, defaults to the configured
                `max_upstream_recursion_depth`.

        Returns:
            Latest successful build number per upstream job name.
        """
        depth = self.max_upstream_recursion_depth if max_depth is None else max_depth
        frontier: UpstreamFrontier = deque([(job_full_name, build_number, 0)])
        visited: dict[str, int] = {}
        self._expand_upstream(job_full_name, frontier, visited, depth)
        return visited

    def _expand_upstream(
        self,
        origin: str,
        frontier: UpstreamFrontier,
        visited: dict[str, int],
        max_depth: int,
    ) -> None:
        memo: dict[tuple[str, int], dict[str, int]] = {}
        truncated: list[str] = []
        while frontier:
            name, number, hops = frontier.popleft()
            if hops >= max_depth:
                truncated.append(name)
                continue
            key = (name, number)
            if key not in memo:
                memo[key] = self._upstream_jobs(name, number)
            for upstream_name, upstream_number in memo[key].items():
                if upstream_name == origin or upstream_name in visited:
                    continue
                visited[upstream_name] = upstream_number
                frontier.append((upstream_name, upstream_number, hops + 1))

        if truncated:
            logger.debug(
                "Transitive upstream jobs of %s not expanded beyond %s hop(s): %s",
                origin,
                max_depth,
                ", ".join(sorted(truncated)),
            )
