"""Supported database backends.

Each backend knows its driver, its pool presets, which migration errors it can
ignore, how to describe the server it talks to, and how to shut down. The
backend is picked from the URL scheme of the store configuration.

Pool presets are only defaults: any property passed in
`StoreConfig.properties` wins over them, see `engine_options`.
"""
from __future__ import annotations

import importlib.util
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar

from sqlalchemy import event
from sqlalchemy.engine import URL, Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError
from sqlalchemy.pool import QueuePool, StaticPool

from maven_build_graph.config import StoreConfig
from maven_build_graph.exceptions import ConfigurationError, DriverNotAvailableError
from maven_build_graph.migration_steps import COMMON_STEPS, MigrationStep

logger = logging.getLogger(__name__)

# Above these edge counts the embedded backend is considered too small.
EMBEDDED_MAX_EDGE_ROWS = 100

INT_PROPERTIES = frozenset({"pool_size", "max_overflow", "pool_recycle"})
FLOAT_PROPERTIES = frozenset({"pool_timeout"})
BOOL_PROPERTIES = frozenset({"pool_pre_ping", "echo"})
CONNECT_PREFIX = "connect."

MYSQL_ER_EMPTY_QUERY = 1065

# Execution option marking a connection whose transaction will write.
WRITE_TRANSACTION = "maven_build_graph_write"


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Property {key!r} must be a boolean, got {value!r}")


def _coerce_connect_arg(value: str) -> Any:
    lowered = value.strip().lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    for kind in (int, float):
        try:
            return kind(value)
        except ValueError:
            pass
    return value


def coerce_properties(properties: Mapping[str, str]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split free-form properties into engine options and driver connect arguments.

    Args:
        properties: Raw string properties from the configuration.

    Returns:
        A tuple of (engine options, connect arguments).

    Raises:
        ConfigurationError: If a key is unknown or a value has the wrong type.
    """
    options: dict[str, Any] = {}
    connect_args: dict[str, Any] = {}
    for key, value in properties.items():
        if key.startswith(CONNECT_PREFIX) and len(key) > len(CONNECT_PREFIX):
            connect_args[key[len(CONNECT_PREFIX):]] = _coerce_connect_arg(value)
        elif key in INT_PROPERTIES:
            try:
                options[key] = int(value)
            except ValueError:
                raise ConfigurationError(f"Property {key!r} must be an integer, got {value!r}") from None
        elif key in FLOAT_PROPERTIES:
            try:
                options[key] = float(value)
            except ValueError:
                raise ConfigurationError(f"Property {key!r} must be a number, got {value!r}") from None
        elif key in BOOL_PROPERTIES:
            options[key] = _parse_bool(key, value)
        else:
            raise ConfigurationError(f"Unknown database property {key!r}")
    return options, connect_args


def _error_code(exc: BaseException) -> Any:
    orig = getattr(exc, "orig", None) or exc
    args = getattr(orig, "args", ())
    return args[0] if args else None


def extract_mariadb_version(server_version: str) -> str:
    """Extract the MariaDB release from a server version string.

    Older servers prefix the release with a fake MySQL version, e.g.
    `5.5.5-10.2.20-MariaDB-log` is MariaDB `10.2.20`.
    """
    end = server_version.find("-MariaDB")
    if end == -1:
        return server_version
    start = server_version.find("-")
    if start < end:
        return server_version[start + 1:end]
    return server_version[:end]


class Backend(ABC):
    """A relational backend the store can run on."""

    scheme: ClassVar[str]
    label: ClassVar[str]
    driver: ClassVar[str | None] = None
    driver_module: ClassVar[str]
    driver_package: ClassVar[str]
    extra: ClassVar[str | None] = None
    script_dir: ClassVar[str]
    requires_credentials: ClassVar[bool] = True
    pool_presets: ClassVar[Mapping[str, Any]] = {}
    connect_presets: ClassVar[Mapping[str, Any]] = {}
    migration_steps: ClassVar[Mapping[int, MigrationStep]] = COMMON_STEPS

    def check_driver(self) -> None:
        """Fail fast when the driver package is not installed.

        Raises:
            DriverNotAvailableError: If the driver module cannot be found.
        """
        if importlib.util.find_spec(self.driver_module) is not None:
            return
        hint = f"pip install 'maven-build-graph[{self.extra}]'" if self.extra else f"pip install {self.driver_package}"
        raise DriverNotAvailableError(
            f"{self.label} driver {self.driver_package!r} is not available, install it with: {hint}"
        )

    def engine_url(self, config: StoreConfig) -> URL:
        """Return the SQLAlchemy URL with driver and credentials applied.

        Raises:
            ConfigurationError: If credentials are missing or not accepted.
        """
        url = make_url(config.url)
        if self.driver:
            url = url.set(drivername=f"{self.scheme}+{self.driver}")
        if config.username:
            url = url.set(username=config.username)
        if config.password:
            url = url.set(password=config.password)
        if self.requires_credentials and not url.username:
            raise ConfigurationError(f"MBG_DB_USER is required for {self.label}")
        return url

    def engine_options(self, config: StoreConfig) -> dict[str, Any]:
        """Return `create_engine` keyword arguments: presets, then overrides."""
        overrides, connect_overrides = coerce_properties(config.properties)
        options: dict[str, Any] = {"echo": False, **self.pool_presets, **overrides}
        connect_args = {**self.connect_presets, **connect_overrides}
        if connect_args:
            options["connect_args"] = connect_args
        return options

    def configure_engine(self, engine: Engine) -> None:
        """Install engine event hooks, if the backend needs any."""

    def is_benign_migration_error(self, exc: BaseException) -> bool:
        """Return True if a failed migration statement can be skipped."""
        return False

    @abstractmethod
    def describe(self, connection: Connection) -> str:
        """Return the product name and version of the connected server."""

    def is_production_grade(self, row_counts: Mapping[str, int]) -> bool:
        """Return True if the backend is adequate for the given table sizes."""
        return True

    def shutdown(self, engine: Engine) -> None:
        """Run backend specific shutdown work before the pool is disposed."""


class SqliteBackend(Backend):
    """Embedded file based backend, using the standard library driver.

    pysqlite does not emit BEGIN on its own, which breaks transactional DDL.
    The engine hooks below take over transaction control, following the
    recipe from the SQLAlchemy SQLite dialect documentation. Connections
    carrying the `WRITE_TRANSACTION` execution option begin with
    `BEGIN IMMEDIATE`, all others with a deferred `BEGIN`.
    """

    scheme = "sqlite"
    label = "SQLite"
    driver_module = "sqlite3"
    driver_package = "sqlite3"
    script_dir = "sqlite"
    requires_credentials = False
    pool_presets = {"poolclass": QueuePool, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}
    connect_presets = {"timeout": 30, "check_same_thread": False}

    @staticmethod
    def database_path(url: URL) -> Path | None:
        """Return the database file, or None for an in-memory database."""
        database = url.database
        if not database or database == ":memory:" or database.startswith("file::memory:"):
            return None
        return Path(database)

    def engine_url(self, config: StoreConfig) -> URL:
        url = make_url(config.url)
        if config.username or config.password or url.username:
            raise ConfigurationError("SQLite does not accept a username or password")
        return url

    def engine_options(self, config: StoreConfig) -> dict[str, Any]:
        options = super().engine_options(config)
        path = self.database_path(make_url(config.url))
        if path is None:
            # All sessions must share the single in-memory database.
            for key in ("pool_size", "max_overflow", "pool_timeout"):
                options.pop(key, None)
            options["poolclass"] = StaticPool
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
        return options

    def configure_engine(self, engine: Engine) -> None:
        in_memory = self.database_path(engine.url) is None

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(connection: Connection) -> None:
            if connection.get_execution_options().get(WRITE_TRANSACTION):
                # Writers queue on the busy timeout, never on a lock upgrade.
                connection.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                connection.exec_driver_sql("BEGIN")

    def describe(self, connection: Connection) -> str:
        version = connection.exec_driver_sql("SELECT sqlite_version()").scalar()
        return f"{self.label} {version}"

    def is_production_grade(self, row_counts: Mapping[str, int]) -> bool:
        return (
            row_counts.get("dependency_edge", 0) <= EMBEDDED_MAX_EDGE_ROWS
            and row_counts.get("generated_artifact_edge", 0) <= EMBEDDED_MAX_EDGE_ROWS
        )

    def shutdown(self, engine: Engine) -> None:
        if self.database_path(engine.url) is None:
            return
        raw = engine.raw_connection()
        try:
            cursor = raw.cursor()
            cursor.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            cursor.close()
        finally:
            raw.close()


class PostgresqlBackend(Backend):
    scheme = "postgresql"
    label = "PostgreSQL"
    driver = "pg8000"
    driver_module = "pg8000"
    driver_package = "pg8000"
    extra = "postgresql"
    script_dir = "postgresql"
    pool_presets = {
        "poolclass": QueuePool,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }

    def describe(self, connection: Connection) -> str:
        version = connection.exec_driver_sql("SHOW server_version").scalar()
        return f"{self.label} {version}"


class MySqlBackend(Backend):
    scheme = "mysql"
    label = "MySQL"
    driver = "pymysql"
    driver_module = "pymysql"
    driver_package = "PyMySQL"
    extra = "mysql"
    script_dir = "mysql"
    pool_presets = {
        "poolclass": QueuePool,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }
    connect_presets = {"charset": "utf8mb4"}

    def is_benign_migration_error(self, exc: BaseException) -> bool:
        # A script chunk holding only comments is an "empty query" for MySQL.
        return _error_code(exc) == MYSQL_ER_EMPTY_QUERY

    def describe(self, connection: Connection) -> str:
        version = str(connection.exec_driver_sql("SELECT VERSION()").scalar())
        if "MariaDB" in version:
            return f"MariaDB {extract_mariadb_version(version)}"
        try:
            aurora = connection.exec_driver_sql("SELECT AURORA_VERSION()").scalar()
        except DBAPIError:
            logger.debug("Not an Amazon Aurora server")
            return f"{self.label} {version}"
        return f"{self.label} {version} / Amazon Aurora {aurora}"


class MariaDbBackend(MySqlBackend):
    scheme = "mariadb"
    label = "MariaDB"

    def describe(self, connection: Connection) -> str:
        version = str(connection.exec_driver_sql("SELECT VERSION()").scalar())
        return f"{self.label} {extract_mariadb_version(version)}"


BACKENDS: Mapping[str, type[Backend]] = {
    backend.scheme: backend
    for backend in (SqliteBackend, PostgresqlBackend, MySqlBackend, MariaDbBackend)
}


def backend_for_url(url: str) -> Backend:
    """Return the backend serving a database URL.

    Args:
        url: SQLAlchemy URL, with or without a driver suffix.

    Returns:
        A backend instance.

    Raises:
        ConfigurationError: If the URL is invalid or its scheme is not supported.
    """
    try:
        scheme = make_url(url).get_backend_name()
    except ArgumentError as exc:
        raise ConfigurationError(f"Invalid database URL {url!r}: {exc}") from None
    backend = BACKENDS.get(scheme)
    if backend is None:
        supported = ", ".join(sorted(BACKENDS))
        raise ConfigurationError(f"Unsupported database type: {scheme} (supported: {supported})")
    return backend()
