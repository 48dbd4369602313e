"""Store configuration module.

Supports an embedded SQLite file and networked PostgreSQL, MySQL or MariaDB
servers. Configuration is read from environment variables.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from maven_build_graph.exceptions import ConfigurationError


DEFAULT_DB_URL = "sqlite:///maven-build-graph.db"
DEFAULT_MAX_UPSTREAM_RECURSION_DEPTH = 3
DEFAULT_INSTANCE_ID = "default"


def parse_properties(text: str | None) -> dict[str, str]:
    """Parse free-form tuning properties.

    Accepts one `key=value` pair per line or pairs separated by `;`. Blank
    entries and lines starting with `#` are ignored.

    Args:
        text: Raw properties text, possibly empty.

    Returns:
        The parsed properties, in declaration order.

    Raises:
        ConfigurationError: If an entry has no `=` or an empty key.
    """
    properties: dict[str, str] = {}
    if not text:
        return properties

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        for entry in line.split(";"):
            entry = entry.strip()
            if not entry:
                continue
            key, sep, value = entry.partition("=")
            key = key.strip()
            if not sep or not key:
                raise ConfigurationError(f"Invalid property entry {entry!r}, expected key=value")
            properties[key] = value.strip()
    return properties


@dataclass
class StoreConfig:
    """Store configuration container.

    Attributes:
        url: Backend-qualified SQLAlchemy URL, e.g. "sqlite:///builds.db" or
            "postgresql://db.example.com:5432/builds"
        username: Database user (networked backends only)
        password: Database password
        properties: Free-form tuning properties overriding the backend presets
        max_upstream_recursion_depth: Hop bound for transitive upstream queries
    """

    url: str = DEFAULT_DB_URL
    username: str | None = None
    password: str | None = None
    properties: dict[str, str] = field(default_factory=dict)
    max_upstream_recursion_depth: int = DEFAULT_MAX_UPSTREAM_RECURSION_DEPTH

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Create configuration from environment variables.

        Environment variables:
            MBG_DB_URL: Backend URL (default: "sqlite:///maven-build-graph.db")
            MBG_DB_USER: Database user
            MBG_DB_PASSWORD: Database password
            MBG_DB_PROPERTIES: Tuning properties, `key=value` per line or `;` separated
            MBG_MAX_UPSTREAM_DEPTH: Transitive upstream hop bound (default: 3)
        """
        raw_depth = os.getenv("MBG_MAX_UPSTREAM_DEPTH")
        try:
            depth = int(raw_depth) if raw_depth else DEFAULT_MAX_UPSTREAM_RECURSION_DEPTH
        except ValueError:
            raise ConfigurationError(
                f"MBG_MAX_UPSTREAM_DEPTH must be an integer, got {raw_depth!r}"
            ) from None

        return cls(
            url=os.getenv("MBG_DB_URL") or DEFAULT_DB_URL,
            username=os.getenv("MBG_DB_USER") or None,
            password=os.getenv("MBG_DB_PASSWORD") or None,
            properties=parse_properties(os.getenv("MBG_DB_PROPERTIES")),
            max_upstream_recursion_depth=depth,
        )

    @property
    def scheme(self) -> str:
        """Return the backend name of the URL, without any driver suffix."""
        try:
            return make_url(self.url).get_backend_name()
        except ArgumentError as exc:
            raise ConfigurationError(f"Invalid database URL {self.url!r}: {exc}") from None

    def validate(self) -> None:
        """Validate the configuration.

        Backend-specific checks (supported scheme, credentials, driver) are
        done by the backend itself when the connection is opened.

        Raises:
            ConfigurationError: If required configuration is missing.
        """
        if not self.url:
            raise ConfigurationError("MBG_DB_URL is required")
        if not self.scheme:
            raise ConfigurationError(f"Invalid database URL {self.url!r}")
        if self.max_upstream_recursion_depth < 1:
            raise ConfigurationError(
                f"MBG_MAX_UPSTREAM_DEPTH must be at least 1, got {self.max_upstream_recursion_depth}"
            )

    def masked_url(self) -> str:
        """Return the URL with any embedded password hidden, for logging."""
        try:
            return make_url(self.url).render_as_string(hide_password=True)
        except ArgumentError:
            return self.url


@dataclass(frozen=True)
class InstanceDetails:
    """Identity of the server instance that hosts the store.

    Migration steps receive this as their context, and the server instance
    row is keyed by `legacy_instance_id`.

    Attributes:
        legacy_instance_id: Stable bootstrap id of the hosting server
        root_url: Current display URL of the hosting server
    """

    legacy_instance_id: str = DEFAULT_INSTANCE_ID
    root_url: str = ""

    @classmethod
    def from_env(cls) -> "InstanceDetails":
        """Create instance details from environment variables.

        Environment variables:
            MBG_INSTANCE_ID: Legacy bootstrap id (default: "default")
            MBG_ROOT_URL: Display URL (default: "")
        """
        return cls(
            legacy_instance_id=os.getenv("MBG_INSTANCE_ID") or DEFAULT_INSTANCE_ID,
            root_url=os.getenv("MBG_ROOT_URL", ""),
        )
