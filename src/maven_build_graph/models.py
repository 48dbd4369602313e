"""Pydantic models for Maven artifacts, dependencies and build results."""

from __future__ import annotations

from enum import IntEnum
from functools import total_ordering

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_TYPE = "jar"
SNAPSHOT_SUFFIX = "-SNAPSHOT"


class BuildResult(IntEnum):
    """Build result ordinals, as reported by the build orchestrator."""

    SUCCESS = 0
    UNSTABLE = 1
    FAILURE = 2
    NOT_BUILT = 3
    ABORTED = 4


class ArtifactCoordinate(BaseModel):
    """Maven coordinates (GroupId, ArtifactId, Version, Type, Classifier).

    `classifier=None` is a value of its own: a coordinate without classifier
    never equals a coordinate with one. The model is frozen, so coordinates
    can be used as dict keys and set members.
    """

    model_config = ConfigDict(frozen=True)

    group_id: str = Field(..., min_length=1)
    artifact_id: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    type: str = Field(default=DEFAULT_TYPE, min_length=1)
    classifier: str | None = None

    @field_validator("classifier")
    @classmethod
    def normalize_classifier(cls, value: str | None) -> str | None:
        # An empty classifier and no classifier are the same Maven coordinate.
        return value or None

    @classmethod
    def parse(cls, identifier: str) -> "ArtifactCoordinate":
        """Parse a `group:artifact:version` or `group:artifact:type:version` string.

        Args:
            identifier: The colon separated coordinate.

        Returns:
            The parsed coordinate.

        Raises:
            ValueError: If the identifier has another number of segments.
        """
        parts = identifier.strip().split(":")
        if len(parts) == 3:
            group_id, artifact_id, version = parts
            return cls(group_id=group_id, artifact_id=artifact_id, version=version)
        if len(parts) == 4:
            group_id, artifact_id, type_, version = parts
            return cls(group_id=group_id, artifact_id=artifact_id, type=type_, version=version)
        raise ValueError(f"Unsupported artifact coordinate format: {identifier!r}")

    @property
    def id(self) -> str:
        """Return `group:artifact:type[:classifier]:version`."""
        classifier = f"{self.classifier}:" if self.classifier else ""
        return f"{self.group_id}:{self.artifact_id}:{self.type}:{classifier}{self.version}"

    @property
    def is_snapshot(self) -> bool:
        return self.version.endswith(SNAPSHOT_SUFFIX)

    def with_type(self, type_: str) -> "ArtifactCoordinate":
        """Return a copy of this coordinate with another packaging type."""
        return self.model_copy(update={"type": type_})


@total_ordering
class MavenArtifact(BaseModel):
    """An artifact generated by a build, as read back from the store.

    `version` is the resolved version deployed by the build (for example
    `1.0-20240101.000000-1`) and `base_version` the version declared in the
    POM (`1.0-SNAPSHOT`). Dependencies are matched on the base version.
    """

    model_config = ConfigDict(frozen=True)

    group_id: str
    artifact_id: str
    version: str
    base_version: str | None = None
    type: str = DEFAULT_TYPE
    classifier: str | None = None
    extension: str | None = None
    repository_url: str | None = None

    @field_validator("classifier")
    @classmethod
    def normalize_classifier(cls, value: str | None) -> str | None:
        # An empty classifier and no classifier are the same Maven coordinate.
        return value or None

    def _sort_key(self) -> tuple[str, ...]:
        return (
            self.group_id,
            self.artifact_id,
            self.base_version or "",
            self.version,
            self.type,
            self.classifier or "",
        )

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, MavenArtifact):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    @property
    def id(self) -> str:
        """Return `group:artifact:type[:classifier]:baseVersion`.

        Falls back to the resolved version when no base version is known.
        """
        classifier = f"{self.classifier}:" if self.classifier else ""
        version = self.base_version if self.base_version is not None else self.version
        return f"{self.group_id}:{self.artifact_id}:{self.type}:{classifier}{version}"

    @property
    def short_description(self) -> str:
        """Return the id, with the resolved version in parentheses when both are known."""
        if self.base_version is None:
            return self.id
        classifier = f"{self.classifier}:" if self.classifier else ""
        return (
            f"{self.group_id}:{self.artifact_id}:{self.type}:{classifier}"
            f"{self.base_version}({self.version})"
        )

    def _file_name(self, version: str | None) -> str:
        classifier = f"-{self.classifier}" if self.classifier else ""
        extension = self.extension or self.type
        return f"{self.artifact_id}-{version}{classifier}.{extension}"

    @property
    def file_name(self) -> str:
        return self._file_name(self.version)

    @property
    def file_name_with_base_version(self) -> str:
        return self._file_name(self.base_version or self.version)

    @property
    def url(self) -> str | None:
        """Return the repository URL of the deployed file, or None if not deployed."""
        if not self.is_deployed:
            return None
        group_path = self.group_id.replace(".", "/")
        repository_url = (self.repository_url or "").rstrip("/")
        return (
            f"{repository_url}/{group_path}/{self.artifact_id}/{self.version}/"
            f"{self.file_name_with_base_version}"
        )

    @property
    def is_snapshot(self) -> bool:
        return self.version.endswith(SNAPSHOT_SUFFIX) or (
            self.base_version is not None and self.base_version.endswith(SNAPSHOT_SUFFIX)
        )

    @property
    def is_deployed(self) -> bool:
        return bool(self.repository_url)

    def coordinate(self) -> ArtifactCoordinate:
        """Return the coordinate consumers declare to depend on this artifact."""
        return ArtifactCoordinate(
            group_id=self.group_id,
            artifact_id=self.artifact_id,
            version=self.base_version or self.version,
            type=self.type,
            classifier=self.classifier,
        )


@total_ordering
class MavenDependency(BaseModel):
    """A dependency declared by a build."""

    model_config = ConfigDict(frozen=True)

    coordinate: ArtifactCoordinate
    scope: str | None = None
    ignore_upstream_triggers: bool = False

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, MavenDependency):
            return NotImplemented
        return (self.coordinate.id, self.scope or "") < (other.coordinate.id, other.scope or "")

    def label(self) -> str:
        """Return a user-facing label for the dependency.

        Returns:
            A formatted string including the coordinate and scope when present.
        """
        parts: list[str] = [self.coordinate.id]
        if self.scope:
            parts.append(f"(scope={self.scope})")
        if self.ignore_upstream_triggers:
            parts.append("(ignore upstream triggers)")
        return " ".join(parts)


class JobSummary(BaseModel):
    """A job with its denormalized build pointers."""

    model_config = ConfigDict(frozen=True)

    full_name: str
    last_build_number: int | None = None
    last_successful_build_number: int | None = None
