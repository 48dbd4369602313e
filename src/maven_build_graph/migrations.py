"""Versioned schema migrations.

Each backend ships numbered scripts `sql/<backend>/NN_migration.sql`. Starting
from the version recorded in the `version` table, the migrator applies unit
n+1, n+2, ... until no script is left. A unit is its SQL script plus the
programmatic step registered for the same number, run in one transaction.

Statements are split on `;`, so scripts must not contain semicolons in string
literals or procedural blocks.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from sqlalchemy import func, inspect, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from maven_build_graph.backends import WRITE_TRANSACTION, Backend
from maven_build_graph.config import InstanceDetails
from maven_build_graph.db_models import DATA_TABLES, SchemaVersion
from maven_build_graph.exceptions import MigrationError, MigrationScriptsNotFoundError

logger = logging.getLogger(__name__)

VERSION_TABLE = "version"
SCRIPT_ROOT = Path(__file__).resolve().parent / "sql"


class MigrationState(Enum):
    UNINITIALIZED = "uninitialized"
    AT_VERSION = "at_version"
    FAILED = "failed"


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of a `SchemaMigrator.migrate` run."""

    initial_version: int
    final_version: int

    @property
    def applied(self) -> int:
        return self.final_version - self.initial_version


def split_statements(script: str) -> list[str]:
    """Split a migration script into statements.

    Lines starting with `--` are dropped, then the rest is split on `;`.
    Empty statements are skipped.
    """
    lines = [line for line in script.splitlines() if not line.strip().startswith("--")]
    statements = (chunk.strip() for chunk in "\n".join(lines).split(";"))
    return [statement for statement in statements if statement]


def script_directory(backend: Backend) -> Path:
    return SCRIPT_ROOT / backend.script_dir


class SchemaMigrator:
    """Bring the database schema to the latest version shipped with the package.

    Args:
        engine: Engine of the store database.
        backend: Backend the engine talks to.
        instance: Hosting server details, passed to the programmatic steps.
        scripts: Directory holding the `NN_migration.sql` files. Defaults to
            the scripts packaged for the backend.
    """

    def __init__(
        self,
        engine: Engine,
        backend: Backend,
        instance: InstanceDetails,
        scripts: Path | None = None,
    ) -> None:
        self.engine = engine
        self.backend = backend
        self.instance = instance
        self.scripts = scripts if scripts is not None else script_directory(backend)
        self.state = MigrationState.UNINITIALIZED
        self.version = 0

    def current_version(self) -> int:
        """Return the applied schema version, 0 when the schema does not exist yet."""
        with self.engine.connect() as connection:
            return self._read_version(connection)

    def _read_version(self, connection: Connection) -> int:
        if not inspect(connection).has_table(VERSION_TABLE):
            return 0
        version = connection.execute(select(SchemaVersion.version)).scalar()
        return int(version or 0)

    def _load_script(self, version: int) -> str | None:
        script = self.scripts / f"{version:02d}_migration.sql"
        if not script.is_file():
            return None
        return script.read_text(encoding="utf-8")

    def migrate(self) -> MigrationResult:
        """Apply every pending migration unit.

        Returns:
            The versions before and after the run.

        Raises:
            MigrationError: If a statement or programmatic step fails.
            MigrationScriptsNotFoundError: If the schema is still at version 0
                after the run, meaning no script was found at all.
        """
        try:
            initial = self.current_version()
        except SQLAlchemyError as exc:
            self.state = MigrationState.FAILED
            raise MigrationError(f"Failure to read the schema version: {exc}") from exc
        self.version = initial
        self.state = MigrationState.AT_VERSION if initial else MigrationState.UNINITIALIZED

        while True:
            next_version = self.version + 1
            script = self._load_script(next_version)
            if script is None:
                break
            logger.info("Migrate database to version %s", next_version)
            self._apply(next_version, script)
            self.version = next_version
            self.state = MigrationState.AT_VERSION

        if self.version == 0:
            self.state = MigrationState.FAILED
            raise MigrationScriptsNotFoundError(
                f"Failure to load database DDL files, no migration script found in {self.scripts}"
            )

        if self.version != initial:
            logger.info("Database successfully migrated from version %s to version %s", initial, self.version)
        else:
            logger.debug("Database schema is up to date at version %s", self.version)
        return MigrationResult(initial_version=initial, final_version=self.version)

    def _apply(self, version: int, script: str) -> None:
        step = self.backend.migration_steps.get(version)
        try:
            with self.engine.connect() as connection:
                connection.execution_options(**{WRITE_TRANSACTION: True})
                with connection.begin():
                    for statement in split_statements(script):
                        self._execute(connection, version, statement)
                    if step is not None:
                        logger.info("Run migration step %s (%s)", version, step.__name__)
                        step(connection, self.instance)
                    connection.execute(
                        text(f"UPDATE {VERSION_TABLE} SET version = :version"), {"version": version}
                    )
        except MigrationError:
            self.state = MigrationState.FAILED
            raise
        except SQLAlchemyError as exc:
            self.state = MigrationState.FAILED
            raise MigrationError(f"Failure to apply migration {version:02d}: {exc}") from exc

    def _execute(self, connection: Connection, version: int, statement: str) -> None:
        try:
            connection.exec_driver_sql(statement)
        except DBAPIError as exc:
            if self.backend.is_benign_migration_error(exc):
                logger.info("Ignore benign failure of migration %02d statement %r: %s", version, statement, exc.orig)
                return
            raise MigrationError(
                f"Failure to execute migration {version:02d}_migration.sql statement:\n{statement}\n{exc.orig}"
            ) from exc

    def verify(self) -> dict[str, int]:
        """Count the rows of every data table.

        Returns:
            Row count per table name.

        Raises:
            MigrationError: If a table cannot be read.
        """
        counts: dict[str, int] = {}
        try:
            with self.engine.connect() as connection:
                for table in DATA_TABLES:
                    name = table.__tablename__
                    counts[name] = connection.execute(select(func.count()).select_from(table)).scalar_one()
        except SQLAlchemyError as exc:
            raise MigrationError(f"Database sanity check failed: {exc}") from exc
        logger.debug("Database sanity check passed: %s", counts)
        return counts
