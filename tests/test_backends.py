from __future__ import annotations

import importlib.util

import pytest
from sqlalchemy.exc import DBAPIError
from sqlalchemy.pool import QueuePool, StaticPool

from maven_build_graph.backends import (
    MariaDbBackend,
    MySqlBackend,
    PostgresqlBackend,
    SqliteBackend,
    backend_for_url,
    coerce_properties,
    extract_mariadb_version,
)
from maven_build_graph.config import StoreConfig
from maven_build_graph.exceptions import ConfigurationError, DriverNotAvailableError


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("sqlite:///builds.db", SqliteBackend),
        ("sqlite://", SqliteBackend),
        ("postgresql://db/builds", PostgresqlBackend),
        ("postgresql+pg8000://db/builds", PostgresqlBackend),
        ("mysql://db/builds", MySqlBackend),
        ("mariadb://db/builds", MariaDbBackend),
    ],
)
def test_backend_for_url_dispatches_on_scheme(url: str, expected: type) -> None:
    assert type(backend_for_url(url)) is expected


def test_backend_for_url_rejects_unknown_scheme() -> None:
    with pytest.raises(ConfigurationError, match="Unsupported database type: oracle"):
        backend_for_url("oracle://db/builds")


def test_postgresql_presets() -> None:
    backend = PostgresqlBackend()
    options = backend.engine_options(StoreConfig(url="postgresql://db/builds", username="jenkins"))

    assert options["poolclass"] is QueuePool
    assert options["pool_size"] == 5
    assert options["max_overflow"] == 10
    assert options["pool_timeout"] == 30
    assert options["pool_recycle"] == 1800
    assert options["pool_pre_ping"] is True
    assert "connect_args" not in options


def test_overrides_win_over_presets() -> None:
    backend = MySqlBackend()
    config = StoreConfig(
        url="mysql://db/builds",
        username="jenkins",
        properties={"pool_size": "20", "pool_pre_ping": "false", "connect.connect_timeout": "5"},
    )

    options = backend.engine_options(config)

    assert options["pool_size"] == 20
    assert options["pool_pre_ping"] is False
    assert options["pool_recycle"] == 3600
    assert options["connect_args"] == {"charset": "utf8mb4", "connect_timeout": 5}


def test_coerce_properties_rejects_unknown_keys() -> None:
    with pytest.raises(ConfigurationError, match="Unknown database property 'cachePrepStmts'"):
        coerce_properties({"cachePrepStmts": "true"})


def test_coerce_properties_rejects_bad_values() -> None:
    with pytest.raises(ConfigurationError, match="pool_size"):
        coerce_properties({"pool_size": "many"})
    with pytest.raises(ConfigurationError, match="echo"):
        coerce_properties({"echo": "maybe"})


def test_engine_url_applies_driver_and_credentials() -> None:
    backend = PostgresqlBackend()
    url = backend.engine_url(StoreConfig(url="postgresql://db/builds", username="jenkins", password="s3cret"))

    assert url.drivername == "postgresql+pg8000"
    assert url.username == "jenkins"
    assert url.password == "s3cret"


def test_server_backend_requires_username() -> None:
    with pytest.raises(ConfigurationError, match="MBG_DB_USER is required for MySQL"):
        MySqlBackend().engine_url(StoreConfig(url="mysql://db/builds"))


def test_username_embedded_in_url_is_enough() -> None:
    url = PostgresqlBackend().engine_url(StoreConfig(url="postgresql://jenkins@db/builds"))

    assert url.username == "jenkins"


def test_sqlite_rejects_credentials() -> None:
    with pytest.raises(ConfigurationError, match="SQLite"):
        SqliteBackend().engine_url(StoreConfig(url="sqlite:///builds.db", username="jenkins"))


def test_sqlite_in_memory_uses_a_static_pool() -> None:
    options = SqliteBackend().engine_options(StoreConfig(url="sqlite://"))

    assert options["poolclass"] is StaticPool
    assert "pool_size" not in options
    assert options["connect_args"]["check_same_thread"] is False


def test_sqlite_file_creates_parent_directory(tmp_path) -> None:
    path = tmp_path / "nested" / "builds.db"
    options = SqliteBackend().engine_options(StoreConfig(url=f"sqlite:///{path}"))

    assert path.parent.is_dir()
    assert options["poolclass"] is QueuePool


def test_missing_driver_names_the_package(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(importlib.util, "find_spec", lambda name: None)

    with pytest.raises(DriverNotAvailableError) as excinfo:
        PostgresqlBackend().check_driver()

    assert "pg8000" in str(excinfo.value)
    assert "pip install 'maven-build-graph[postgresql]'" in str(excinfo.value)


def test_driver_not_available_is_a_configuration_error() -> None:
    assert issubclass(DriverNotAvailableError, ConfigurationError)


class _MySqlError(Exception):
    pass


def test_mysql_empty_query_is_benign() -> None:
    empty = DBAPIError("-- nothing", {}, _MySqlError(1065, "Query was empty"))
    syntax = DBAPIError("CREATE TABL x", {}, _MySqlError(1064, "You have an error in your SQL syntax"))

    assert MySqlBackend().is_benign_migration_error(empty)
    assert not MySqlBackend().is_benign_migration_error(syntax)
    assert not PostgresqlBackend().is_benign_migration_error(empty)
    assert not SqliteBackend().is_benign_migration_error(empty)


@pytest.mark.parametrize(
    ("server_version", "expected"),
    [
        ("5.5.5-10.2.20-MariaDB-log", "10.2.20"),
        ("10.11.6-MariaDB", "10.11.6"),
        ("10.6.12-MariaDB-1:10.6.12+maria~ubu2004", "10.6.12"),
        ("8.0.36", "8.0.36"),
    ],
)
def test_extract_mariadb_version(server_version: str, expected: str) -> None:
    assert extract_mariadb_version(server_version) == expected


def test_embedded_backend_is_not_production_grade_beyond_100_edges() -> None:
    backend = SqliteBackend()

    assert backend.is_production_grade({"dependency_edge": 100, "generated_artifact_edge": 100})
    assert not backend.is_production_grade({"dependency_edge": 101})
    assert not backend.is_production_grade({"generated_artifact_edge": 101})
    assert PostgresqlBackend().is_production_grade({"dependency_edge": 1_000_000})


def test_mariadb_reuses_mysql_scripts() -> None:
    assert MariaDbBackend.script_dir == "mysql"
    assert MariaDbBackend.driver == "pymysql"
