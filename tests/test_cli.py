from __future__ import annotations

import pytest
from rich.console import Console
from typer.testing import CliRunner

from maven_build_graph import cli
from maven_build_graph.cli import app
from maven_build_graph.config import InstanceDetails, StoreConfig
from maven_build_graph.models import ArtifactCoordinate, BuildResult
from maven_build_graph.store import BuildGraphStore

runner = CliRunner()

CORE = ArtifactCoordinate.parse("com.acme:core:1.0-SNAPSHOT")
BASE = ArtifactCoordinate.parse("com.acme:base:2.0")


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    """Render tables on one line each, whatever the terminal size."""
    monkeypatch.setattr(cli, "console", Console(width=200))


def _table_rows(output: str) -> list[tuple[str, ...]]:
    return [
        tuple(cell.strip() for cell in line.strip().strip("│").split("│"))
        for line in output.splitlines()
        if line.startswith("│")
    ]


@pytest.fixture
def seeded_url(db_url: str, monkeypatch: pytest.MonkeyPatch) -> str:
    """A database where `app` consumes the artifact of `lib`, which consumes the one of `base`."""
    monkeypatch.setenv("MBG_DB_URL", db_url)
    with BuildGraphStore(StoreConfig(url=db_url), InstanceDetails()) as store:
        store.recorder.record_generated_artifact("base", 1, BASE)
        store.recorder.update_build_on_completion("base", 1, BuildResult.SUCCESS, 0, 10)
        store.recorder.record_dependency("lib", 1, BASE)
        store.recorder.record_generated_artifact(
            "lib", 1, CORE, resolved_version="1.0-20240101.000000-1"
        )
        store.recorder.update_build_on_completion("lib", 1, BuildResult.SUCCESS, 0, 10)
        store.recorder.record_dependency("app", 1, CORE, scope="compile")
        store.recorder.update_build_on_completion("app", 1, BuildResult.SUCCESS, 0, 10)
        store.recorder.record_dependency("orphan", 1, ArtifactCoordinate.parse("junit:junit:4.13.2"))
        store.recorder.delete_job("orphan")
    return db_url


def test_info_shows_backend_and_tables(seeded_url: str) -> None:
    result = runner.invoke(app, ["info"])

    assert result.exit_code == 0, result.output
    assert "SQLite" in result.output
    assert "Schema version: 3" in result.output
    assert "Table job: 3 rows" in result.output


def test_migrate_reports_up_to_date_schema(seeded_url: str) -> None:
    result = runner.invoke(app, ["migrate"])

    assert result.exit_code == 0, result.output
    assert "up to date at version 3" in result.output


def test_migrate_fresh_database(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'fresh.db'}"

    result = runner.invoke(app, ["migrate", "--db-url", url])

    assert result.exit_code == 0, result.output
    assert "from version 0 to 3" in result.output


def test_dependencies(seeded_url: str) -> None:
    result = runner.invoke(app, ["dependencies", "app", "1"])

    assert result.exit_code == 0, result.output
    assert "com.acme:core:jar:1.0-SNAPSHOT" in result.output


def test_generated(seeded_url: str) -> None:
    result = runner.invoke(app, ["generated", "lib", "1"])

    assert result.exit_code == 0, result.output
    assert "Artifacts generated by lib#1" in result.output
    assert "com.acme" in result.output


def test_downstream(seeded_url: str) -> None:
    flat = runner.invoke(app, ["downstream", "lib", "1"])
    grouped = runner.invoke(app, ["downstream", "lib", "1", "--by-artifact"])

    assert flat.exit_code == 0, flat.output
    assert "app" in flat.output
    assert grouped.exit_code == 0, grouped.output
    assert "com.acme:core:jar:1.0-SNAPSHOT(1.0-20240101.000000-1)" in grouped.output


def test_upstream(seeded_url: str) -> None:
    direct = runner.invoke(app, ["upstream", "app", "1"])
    transitive = runner.invoke(app, ["upstream", "app", "1", "--transitive", "--depth", "2"])
    none = runner.invoke(app, ["upstream", "base", "1"])

    assert direct.exit_code == 0, direct.output
    assert "lib" in direct.output
    assert transitive.exit_code == 0, transitive.output
    assert "Transitive upstream jobs of app#1" in transitive.output
    assert _table_rows(transitive.output) == [("1", "base", "1"), ("2", "lib", "1")]
    assert _table_rows(direct.output) == [("1", "lib", "1")]
    assert "No upstream jobs found" in none.output


def test_consumers(seeded_url: str) -> None:
    result = runner.invoke(app, ["consumers", "com.acme:core:1.0-SNAPSHOT"])
    with_classifier = runner.invoke(app, ["consumers", "com.acme:core:1.0-SNAPSHOT", "--classifier", "tests"])

    assert result.exit_code == 0, result.output
    assert "app" in result.output
    assert with_classifier.exit_code == 0, with_classifier.output
    assert "app" not in with_classifier.output


def test_consumers_rejects_malformed_coordinate(seeded_url: str) -> None:
    result = runner.invoke(app, ["consumers", "not-a-coordinate"])

    assert result.exit_code == 1
    assert "Error" in result.output


def test_cleanup(seeded_url: str) -> None:
    first = runner.invoke(app, ["cleanup"])
    second = runner.invoke(app, ["cleanup"])

    assert first.exit_code == 0, first.output
    assert "Deleted 1 unreferenced artifact(s)" in first.output
    assert "Deleted 0 unreferenced artifact(s)" in second.output


def test_configuration_errors_exit_with_status_1(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MBG_DB_URL", "oracle://db/builds")

    result = runner.invoke(app, ["info"])

    assert result.exit_code == 1
    assert "Unsupported database type" in result.output
