"""The build graph store: connection, schema, writes, queries and diagnostics."""
from __future__ import annotations

import logging
from types import TracebackType

from sqlalchemy.engine import Engine

from maven_build_graph.config import InstanceDetails, StoreConfig
from maven_build_graph.db import ConnectionProvider
from maven_build_graph.diagnostics import Diagnostics, OperationStats
from maven_build_graph.graph import GraphQueryEngine
from maven_build_graph.identity import IdentityResolver, ServerInstanceCache
from maven_build_graph.migrations import MigrationResult, SchemaMigrator
from maven_build_graph.recorder import Recorder

logger = logging.getLogger(__name__)


class BuildGraphStore:
    """Opens the database, migrates it, then serves writes and queries.

    No recorder or query call is possible before the schema is fully
    migrated: a configuration or migration failure raises from the
    constructor, after releasing the connections.

    Args:
        config: Store configuration. Defaults to `StoreConfig.from_env()`.
        instance: Hosting server details. Defaults to `InstanceDetails.from_env()`.

    Raises:
        ConfigurationError: If the configuration is invalid or the driver is missing.
        MigrationError: If the schema cannot be migrated.

    Example:
        with BuildGraphStore(StoreConfig(url="sqlite:///builds.db")) as store:
            store.recorder.record_dependency("app", 1, coordinate)
            store.queries.list_upstream_jobs("app", 1)
    """

    def __init__(self, config: StoreConfig | None = None, instance: InstanceDetails | None = None) -> None:
        self.config = config or StoreConfig.from_env()
        self.config.validate()
        self.instance = instance or InstanceDetails.from_env()

        self.provider = ConnectionProvider(self.config)
        engine = self.provider.open()
        try:
            migrator = SchemaMigrator(engine, self.provider.backend, self.instance)
            self.migration: MigrationResult = migrator.migrate()
            migrator.verify()
        except Exception:
            self.provider.close()
            raise

        self.statistics = OperationStats()
        self.server_instance = ServerInstanceCache(self.instance)
        self.identity = IdentityResolver(engine, self.server_instance)
        self.recorder = Recorder(engine, self.identity, self.statistics)
        self.queries = GraphQueryEngine(
            engine,
            self.identity,
            self.statistics,
            max_upstream_recursion_depth=self.config.max_upstream_recursion_depth,
        )
        self.diagnostics = Diagnostics(engine, self.provider.backend, self.statistics, url=self.config.masked_url())
        logger.debug("Store ready at schema version %s", self.migration.final_version)

    @property
    def engine(self) -> Engine:
        return self.provider.engine

    @property
    def closed(self) -> bool:
        return self.provider.closed

    def close(self) -> None:
        self.provider.close()

    def __enter__(self) -> "BuildGraphStore":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
