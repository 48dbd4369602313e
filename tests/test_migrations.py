from __future__ import annotations

import shutil
from pathlib import Path

import pytest
from sqlalchemy import inspect, text

from maven_build_graph.backends import SqliteBackend
from maven_build_graph.config import InstanceDetails, StoreConfig
from maven_build_graph.db import ConnectionProvider
from maven_build_graph.exceptions import MigrationError, MigrationScriptsNotFoundError
from maven_build_graph.migrations import (
    SCRIPT_ROOT,
    MigrationState,
    SchemaMigrator,
    split_statements,
)
from maven_build_graph.store import BuildGraphStore


class BareSqliteBackend(SqliteBackend):
    migration_steps = {}


@pytest.fixture
def provider(config: StoreConfig):
    p = ConnectionProvider(config, backend=BareSqliteBackend())
    p.open()
    yield p
    p.close()


def _write(directory: Path, name: str, content: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(content, encoding="utf-8")
    return path


def test_split_statements_drops_comments_and_empty_chunks() -> None:
    script = """
    -- first table
    CREATE TABLE a (id INTEGER);

    -- only a comment here
    ;
    CREATE TABLE b (id INTEGER);
    """

    assert split_statements(script) == ["CREATE TABLE a (id INTEGER)", "CREATE TABLE b (id INTEGER)"]


def test_mysql_artifact_key_maps_missing_classifier_to_empty() -> None:
    script = (SCRIPT_ROOT / "mysql" / "01_migration.sql").read_text(encoding="utf-8")

    [artifact] = [s for s in split_statements(script) if s.startswith("CREATE TABLE artifact ")]

    assert "classifier_key VARCHAR(100) AS (IFNULL(classifier, '')) STORED" in artifact
    assert "UNIQUE (group_id, artifact_id, version, type, classifier_key)" in artifact
    assert "type, classifier)" not in artifact


def test_fresh_database_is_migrated_to_latest(store: BuildGraphStore) -> None:
    assert store.migration.initial_version == 0
    assert store.migration.final_version == 3
    assert store.diagnostics.schema_version() == 3

    tables = set(inspect(store.engine).get_table_names())
    assert {
        "server_instance",
        "job",
        "build",
        "artifact",
        "dependency_edge",
        "generated_artifact_edge",
        "parent_project_edge",
        "build_upstream_cause",
        "version",
    } <= tables


def test_reopening_applies_nothing(config: StoreConfig, instance: InstanceDetails) -> None:
    with BuildGraphStore(config, instance):
        pass
    with BuildGraphStore(config, instance) as reopened:
        assert reopened.migration.initial_version == 3
        assert reopened.migration.applied == 0


def test_first_migration_registers_the_server_instance(store: BuildGraphStore, instance: InstanceDetails) -> None:
    with store.engine.connect() as connection:
        rows = connection.execute(text("SELECT legacy_instance_id, url FROM server_instance")).all()

    assert [tuple(row) for row in rows] == [(instance.legacy_instance_id, instance.root_url)]


def test_no_scripts_at_all_is_a_packaging_fault(provider: ConnectionProvider, tmp_path: Path) -> None:
    empty = tmp_path / "no-scripts"
    empty.mkdir()
    migrator = SchemaMigrator(provider.engine, provider.backend, InstanceDetails(), scripts=empty)

    with pytest.raises(MigrationScriptsNotFoundError, match="Failure to load database DDL files"):
        migrator.migrate()
    assert migrator.state is MigrationState.FAILED


def test_failing_statement_rolls_back_its_unit(provider: ConnectionProvider, tmp_path: Path) -> None:
    scripts = tmp_path / "scripts"
    _write(scripts, "01_migration.sql", "CREATE TABLE version (version INTEGER NOT NULL);\nINSERT INTO version VALUES (0);")
    _write(scripts, "02_migration.sql", "CREATE TABLE fine (id INTEGER);\nCREATE TABLE broken (;")
    migrator = SchemaMigrator(provider.engine, provider.backend, InstanceDetails(), scripts=scripts)

    with pytest.raises(MigrationError) as excinfo:
        migrator.migrate()

    assert "02_migration.sql" in str(excinfo.value)
    assert "CREATE TABLE broken (" in str(excinfo.value)
    assert migrator.state is MigrationState.FAILED
    assert migrator.current_version() == 1
    assert not inspect(provider.engine).has_table("fine")


def test_migration_resumes_from_recorded_version(provider: ConnectionProvider, tmp_path: Path) -> None:
    scripts = tmp_path / "scripts"
    _write(scripts, "01_migration.sql", "CREATE TABLE version (version INTEGER NOT NULL);\nINSERT INTO version VALUES (0);")
    migrator = SchemaMigrator(provider.engine, provider.backend, InstanceDetails(), scripts=scripts)
    assert migrator.migrate().final_version == 1

    _write(scripts, "02_migration.sql", "-- second unit\nCREATE TABLE later (id INTEGER);")
    result = SchemaMigrator(provider.engine, provider.backend, InstanceDetails(), scripts=scripts).migrate()

    assert (result.initial_version, result.final_version, result.applied) == (1, 2, 1)
    assert inspect(provider.engine).has_table("later")


def test_second_migration_backfills_build_pointers(config: StoreConfig, tmp_path: Path) -> None:
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    shutil.copy(SCRIPT_ROOT / "sqlite" / "01_migration.sql", scripts)

    provider = ConnectionProvider(config)
    engine = provider.open()
    try:
        instance = InstanceDetails(legacy_instance_id="legacy")
        assert SchemaMigrator(engine, provider.backend, instance, scripts=scripts).migrate().final_version == 1
        with engine.begin() as connection:
            connection.execute(text("INSERT INTO job (full_name, server_instance_id) VALUES ('app', 1)"))
            connection.execute(text("INSERT INTO build (job_id, number) VALUES (1, 3), (1, 7)"))

        shutil.copy(SCRIPT_ROOT / "sqlite" / "02_migration.sql", scripts)
        SchemaMigrator(engine, provider.backend, instance, scripts=scripts).migrate()

        with engine.connect() as connection:
            row = connection.execute(
                text("SELECT last_build_number, last_successful_build_number FROM job WHERE full_name = 'app'")
            ).one()
        assert tuple(row) == (7, 7)
    finally:
        provider.close()


def test_verify_counts_every_table(store: BuildGraphStore) -> None:
    migrator = SchemaMigrator(store.engine, store.provider.backend, InstanceDetails())

    counts = migrator.verify()

    assert counts["server_instance"] == 1
    assert counts["artifact"] == 0
    assert len(counts) == 8
