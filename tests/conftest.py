"""Pytest configuration and fixtures for maven-build-graph tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from maven_build_graph.config import InstanceDetails, StoreConfig
from maven_build_graph.graph import GraphQueryEngine
from maven_build_graph.recorder import Recorder
from maven_build_graph.store import BuildGraphStore

ENV_VARS = (
    "MBG_DB_URL",
    "MBG_DB_USER",
    "MBG_DB_PASSWORD",
    "MBG_DB_PROPERTIES",
    "MBG_MAX_UPSTREAM_DEPTH",
    "MBG_INSTANCE_ID",
    "MBG_ROOT_URL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's MBG_* settings out of the tests."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'builds.db'}"


@pytest.fixture
def config(db_url: str) -> StoreConfig:
    return StoreConfig(url=db_url)


@pytest.fixture
def instance() -> InstanceDetails:
    return InstanceDetails(legacy_instance_id="test-instance", root_url="https://ci.example.com/")


@pytest.fixture
def store(config: StoreConfig, instance: InstanceDetails):
    """A migrated store on a temporary SQLite file."""
    s = BuildGraphStore(config, instance)
    yield s
    s.close()


@pytest.fixture
def recorder(store: BuildGraphStore) -> Recorder:
    return store.recorder


@pytest.fixture
def queries(store: BuildGraphStore) -> GraphQueryEngine:
    return store.queries
