"""Write API of the store.

Callers hand over records already parsed from the build events: job names,
build numbers and artifact coordinates. Each call resolves its identities
and writes its edge rows in a single write transaction: a failing insert
leaves neither the edge nor the job, build or artifact rows it created.

Edge rows are not unique. Recording the same dependency twice stores two rows,
callers de-duplicate when exactly-once rows matter.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import and_, delete, or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from maven_build_graph.db import begin_write, sql_errors
from maven_build_graph.db_models import (
    Artifact,
    Build,
    BuildUpstreamCause,
    DependencyEdge,
    GeneratedArtifactEdge,
    Job,
    ParentProjectEdge,
)
from maven_build_graph.diagnostics import WRITE, OperationStats, monitored
from maven_build_graph.identity import IdentityResolver, find_build, find_job
from maven_build_graph.models import ArtifactCoordinate, BuildResult

logger = logging.getLogger(__name__)

PARENT_PROJECT_TYPE = "pom"

# Packaging types Maven itself maps to another file extension.
KNOWN_JAR_TYPES_WITH_DIFFERENT_EXTENSION = frozenset(
    {"test-jar", "maven-plugin", "ejb", "ejb-client", "java-source", "javadoc"}
)

EDGE_TABLES = (DependencyEdge, GeneratedArtifactEdge, ParentProjectEdge)


def millis_to_datetime(millis: int) -> datetime:
    """Convert epoch milliseconds to a UTC datetime."""
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


class Recorder:
    """Records build events.

    Args:
        engine: Engine of the store database.
        identity: Resolver for artifact and build keys.
        statistics: Collector the write calls are timed into.
    """

    def __init__(self, engine: Engine, identity: IdentityResolver, statistics: OperationStats) -> None:
        self.engine = engine
        self.identity = identity
        self.statistics = statistics

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        # The server instance commits on its own, before the write lock is taken.
        self.identity.server_instance_key()
        with sql_errors(operation), Session(self.engine) as session:
            begin_write(session)
            yield session
            session.commit()

    @monitored(WRITE)
    def record_dependency(
        self,
        job_full_name: str,
        build_number: int,
        coordinate: ArtifactCoordinate,
        scope: str | None = None,
        ignore_upstream_triggers: bool = False,
    ) -> None:
        """Record that a build depends on an artifact.

        Args:
            job_full_name: Full name of the consuming job.
            build_number: Number of the consuming build.
            coordinate: Dependency coordinate, with its declared (base) version.
            scope: Maven scope, e.g. "compile" or "test".
            ignore_upstream_triggers: Exclude this edge from the trigger graph.
        """
        logger.debug("record_dependency(%s#%s, %s, %s)", job_full_name, build_number, coordinate.id, scope)
        with self._transaction("record dependency") as session:
            build_id = self.identity.get_or_create_build(job_full_name, build_number, session)
            artifact_id = self.identity.get_or_create_artifact(coordinate, session)
            session.add(
                DependencyEdge(
                    artifact_id=artifact_id,
                    build_id=build_id,
                    scope=scope,
                    ignore_upstream_triggers=ignore_upstream_triggers,
                )
            )

    @monitored(WRITE)
    def record_parent_project(
        self,
        job_full_name: str,
        build_number: int,
        parent: ArtifactCoordinate,
        ignore_upstream_triggers: bool = False,
    ) -> None:
        """Record that the project built by a build inherits from a parent POM.

        The parent is always stored as a `pom` artifact without classifier.
        """
        parent = parent.model_copy(update={"type": PARENT_PROJECT_TYPE, "classifier": None})
        logger.debug("record_parent_project(%s#%s, %s)", job_full_name, build_number, parent.id)
        with self._transaction("record parent project") as session:
            build_id = self.identity.get_or_create_build(job_full_name, build_number, session)
            artifact_id = self.identity.get_or_create_artifact(parent, session)
            session.add(
                ParentProjectEdge(
                    artifact_id=artifact_id,
                    build_id=build_id,
                    ignore_upstream_triggers=ignore_upstream_triggers,
                )
            )

    @monitored(WRITE)
    def record_generated_artifact(
        self,
        job_full_name: str,
        build_number: int,
        coordinate: ArtifactCoordinate,
        *,
        resolved_version: str | None = None,
        repository_url: str | None = None,
        skip_downstream_triggers: bool = False,
        extension: str | None = None,
    ) -> None:
        """Record that a build generated an artifact.

        When the packaging type differs from the file extension (an OSGi
        `bundle` or a NetBeans `nbm` packaged as a `.jar` file), the artifact
        is recorded a second time with the extension as its type, so that
        dependencies declared with either type match.

        Args:
            job_full_name: Full name of the producing job.
            build_number: Number of the producing build.
            coordinate: Artifact coordinate, with the base version.
            resolved_version: Version actually deployed, e.g. a timestamped
                snapshot. Defaults to the base version.
            repository_url: Repository the artifact was deployed to, if any.
            skip_downstream_triggers: Exclude this artifact from the trigger graph.
            extension: File extension. Defaults to the packaging type.
        """
        extension = extension or coordinate.type
        resolved_version = resolved_version or coordinate.version
        coordinates = [coordinate]
        if coordinate.type != extension and coordinate.type not in KNOWN_JAR_TYPES_WITH_DIFFERENT_EXTENSION:
            coordinates.append(coordinate.with_type(extension))

        logger.debug(
            "record_generated_artifact(%s#%s, %s, %s)",
            job_full_name,
            build_number,
            ", ".join(c.id for c in coordinates),
            resolved_version,
        )
        with self._transaction("record generated artifact") as session:
            build_id = self.identity.get_or_create_build(job_full_name, build_number, session)
            artifact_ids = [self.identity.get_or_create_artifact(c, session) for c in coordinates]
            for artifact_id in artifact_ids:
                session.add(
                    GeneratedArtifactEdge(
                        artifact_id=artifact_id,
                        build_id=build_id,
                        version=resolved_version,
                        repository_url=repository_url,
                        extension=extension,
                        skip_downstream_triggers=skip_downstream_triggers,
                    )
                )

    @monitored(WRITE)
    def record_build_upstream_cause(
        self,
        upstream_job_full_name: str,
        upstream_build_number: int,
        downstream_job_full_name: str,
        downstream_build_number: int,
    ) -> None:
        """Record that a build was triggered by another build."""
        with self._transaction("record build upstream cause") as session:
            upstream_build_id = self.identity.get_or_create_build(
                upstream_job_full_name, upstream_build_number, session
            )
            downstream_build_id = self.identity.get_or_create_build(
                downstream_job_full_name, downstream_build_number, session
            )
            session.add(
                BuildUpstreamCause(
                    upstream_build_id=upstream_build_id,
                    downstream_build_id=downstream_build_id,
                )
            )

    @monitored(WRITE)
    def update_build_on_completion(
        self,
        job_full_name: str,
        build_number: int,
        result: BuildResult | int,
        start_time_millis: int,
        duration_millis: int,
    ) -> None:
        """Store the outcome of a finished build.

        The job's last build pointer moves to this build. The last successful
        pointer only moves when the build succeeded.

        Args:
            job_full_name: Full name of the job.
            build_number: Number of the finished build.
            result: Result ordinal.
            start_time_millis: Start time, in milliseconds since the epoch.
            duration_millis: Duration in milliseconds.

        Raises:
            ValueError: If `result` is not a known result ordinal.
        """
        result = BuildResult(result)
        logger.debug("update_build_on_completion(%s#%s, %s)", job_full_name, build_number, result.name)
        with self._transaction("update build on completion") as session:
            build_id = self.identity.get_or_create_build(job_full_name, build_number, session)
            build = session.get(Build, build_id)
            build.result_id = int(result)
            build.start_time = millis_to_datetime(start_time_millis)
            build.duration_ms = duration_millis
            session.add(build)

            job = session.get(Job, build.job_id)
            job.last_build_number = build_number
            if result is BuildResult.SUCCESS:
                job.last_successful_build_number = build_number
            session.add(job)

    @monitored(WRITE)
    def rename_job(self, old_full_name: str, new_full_name: str) -> None:
        """Rename a job, keeping its builds and its key.

        Raises:
            IntegrityStoreError: If a job already has the new name.
        """
        server_instance_id = self.identity.server_instance_key()
        with self._transaction(f"rename job {old_full_name}") as session:
            job = find_job(session, server_instance_id, old_full_name)
            if job is None:
                logger.debug("rename_job: no job named %s", old_full_name)
                return
            job.full_name = new_full_name
            session.add(job)
        logger.info("Renamed job %s to %s", old_full_name, new_full_name)

    @monitored(WRITE)
    def delete_job(self, job_full_name: str) -> None:
        """Delete a job with its builds and all their edges."""
        server_instance_id = self.identity.server_instance_key()
        with self._transaction(f"delete job {job_full_name}") as session:
            job = find_job(session, server_instance_id, job_full_name)
            if job is None:
                logger.debug("delete_job: no job named %s", job_full_name)
                return
            build_ids = select(Build.id).where(Build.job_id == job.id)
            connection = session.connection()
            for edge in EDGE_TABLES:
                connection.execute(delete(edge).where(edge.build_id.in_(build_ids)))
            connection.execute(
                delete(BuildUpstreamCause).where(
                    or_(
                        BuildUpstreamCause.upstream_build_id.in_(build_ids),
                        BuildUpstreamCause.downstream_build_id.in_(build_ids),
                    )
                )
            )
            connection.execute(delete(Build).where(Build.job_id == job.id))
            connection.execute(delete(Job).where(Job.id == job.id))
        logger.info("Deleted job %s", job_full_name)

    @monitored(WRITE)
    def delete_build(self, job_full_name: str, build_number: int) -> None:
        """Delete a build and its edges.

        When the build is the job's last or last successful build, both
        pointers are recomputed from the remaining builds, most recent first.
        A job left without builds keeps existing with empty pointers.
        """
        server_instance_id = self.identity.server_instance_key()
        with self._transaction(f"delete build {job_full_name}#{build_number}") as session:
            job = find_job(session, server_instance_id, job_full_name)
            build = find_build(session, job.id, build_number) if job is not None else None
            if job is None or build is None:
                logger.debug("delete_build: no build %s#%s", job_full_name, build_number)
                return

            connection = session.connection()
            for edge in EDGE_TABLES:
                connection.execute(delete(edge).where(edge.build_id == build.id))
            connection.execute(
                delete(BuildUpstreamCause).where(
                    or_(
                        BuildUpstreamCause.upstream_build_id == build.id,
                        BuildUpstreamCause.downstream_build_id == build.id,
                    )
                )
            )
            connection.execute(delete(Build).where(Build.id == build.id))

            if build_number in (job.last_build_number, job.last_successful_build_number):
                remaining = session.exec(
                    select(Build.number, Build.result_id)
                    .where(Build.job_id == job.id)
                    .order_by(Build.number.desc())
                ).all()
                last_build_number = remaining[0][0] if remaining else None
                last_successful_build_number = next(
                    (number for number, result_id in remaining if result_id == BuildResult.SUCCESS),
                    None,
                )
                logger.debug(
                    "delete_build: %s pointers now last=%s, last successful=%s",
                    job_full_name,
                    last_build_number,
                    last_successful_build_number,
                )
                job.last_build_number = last_build_number
                job.last_successful_build_number = last_successful_build_number
                session.add(job)

    @monitored(WRITE)
    def cleanup(self) -> int:
        """Delete the artifacts no edge refers to anymore.

        Returns:
            The number of deleted artifacts.
        """
        with self._transaction("cleanup") as session:
            unreferenced = and_(
                *(Artifact.id.not_in(select(edge.artifact_id)) for edge in EDGE_TABLES)
            )
            result = session.connection().execute(delete(Artifact).where(unreferenced))
        deleted = result.rowcount or 0
        logger.info("Deleted %s unreferenced artifact(s)", deleted)
        return deleted
