"""SQLModel table classes mirroring the migrated schema.

The DDL itself lives in the versioned scripts under `sql/<backend>/`. These
classes only describe the tables to SQLAlchemy so that the recorder and the
query engine can build portable statements; `create_all` is never called.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class ServerInstance(SQLModel, table=True):
    """The orchestration server that owns a set of jobs."""

    __tablename__ = "server_instance"

    id: Optional[int] = Field(default=None, primary_key=True)
    legacy_instance_id: str = Field(unique=True)
    url: Optional[str] = None


class Job(SQLModel, table=True):
    """A pipeline, identified by its hierarchical full name.

    `last_build_number` and `last_successful_build_number` are denormalized
    from the `build` table and kept up to date by the recorder.
    """

    __tablename__ = "job"
    __table_args__ = (
        UniqueConstraint("full_name", "server_instance_id", name="uq_job_full_name"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    full_name: str
    server_instance_id: int = Field(foreign_key="server_instance.id")
    last_build_number: Optional[int] = None
    last_successful_build_number: Optional[int] = None


class Build(SQLModel, table=True):
    __tablename__ = "build"
    __table_args__ = (UniqueConstraint("job_id", "number", name="uq_build_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(foreign_key="job.id")
    number: int
    result_id: Optional[int] = None
    start_time: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: Optional[int] = None


class Artifact(SQLModel, table=True):
    """A Maven artifact.

    Generated artifacts are stored with their base version, the resolved
    version lives on the generated artifact edge.
    """

    __tablename__ = "artifact"
    __table_args__ = (
        UniqueConstraint(
            "group_id", "artifact_id", "version", "type", "classifier", name="uq_artifact"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    group_id: str
    artifact_id: str
    version: str
    type: str
    classifier: Optional[str] = None


class DependencyEdge(SQLModel, table=True):
    """A build depends on an artifact."""

    __tablename__ = "dependency_edge"

    id: Optional[int] = Field(default=None, primary_key=True)
    artifact_id: int = Field(foreign_key="artifact.id")
    build_id: int = Field(foreign_key="build.id")
    scope: Optional[str] = None
    ignore_upstream_triggers: bool = False


class GeneratedArtifactEdge(SQLModel, table=True):
    """A build generated an artifact, `version` is the resolved version."""

    __tablename__ = "generated_artifact_edge"

    id: Optional[int] = Field(default=None, primary_key=True)
    artifact_id: int = Field(foreign_key="artifact.id")
    build_id: int = Field(foreign_key="build.id")
    version: Optional[str] = None
    repository_url: Optional[str] = None
    extension: Optional[str] = None
    skip_downstream_triggers: bool = False


class ParentProjectEdge(SQLModel, table=True):
    """A build's project inherits from a parent POM."""

    __tablename__ = "parent_project_edge"

    id: Optional[int] = Field(default=None, primary_key=True)
    artifact_id: int = Field(foreign_key="artifact.id")
    build_id: int = Field(foreign_key="build.id")
    ignore_upstream_triggers: bool = False


class BuildUpstreamCause(SQLModel, table=True):
    """A build was triggered by another build."""

    __tablename__ = "build_upstream_cause"

    id: Optional[int] = Field(default=None, primary_key=True)
    upstream_build_id: int = Field(foreign_key="build.id")
    downstream_build_id: int = Field(foreign_key="build.id")


class SchemaVersion(SQLModel, table=True):
    """Single-row table holding the applied migration level."""

    __tablename__ = "version"

    version: int = Field(primary_key=True)


DATA_TABLES: tuple[type[SQLModel], ...] = (
    ServerInstance,
    Job,
    Build,
    Artifact,
    DependencyEdge,
    GeneratedArtifactEdge,
    ParentProjectEdge,
    BuildUpstreamCause,
)
