"""Store introspection: backend identity, table sizes and call statistics."""
from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from maven_build_graph.backends import Backend
from maven_build_graph.db import sql_errors
from maven_build_graph.db_models import DATA_TABLES, SchemaVersion
from maven_build_graph.exceptions import StoreError

logger = logging.getLogger(__name__)

FIND = "find"
WRITE = "write"

F = TypeVar("F", bound=Callable[..., Any])


@dataclass(frozen=True)
class CallStats:
    count: int = 0
    duration_seconds: float = 0.0

    @property
    def duration_ms(self) -> int:
        return int(self.duration_seconds * 1000)


class OperationStats:
    """Thread-safe call counters and cumulative durations, per kind of call."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: dict[str, CallStats] = {FIND: CallStats(), WRITE: CallStats()}

    def record(self, kind: str, duration_seconds: float) -> None:
        with self._lock:
            current = self._stats.get(kind, CallStats())
            self._stats[kind] = CallStats(
                count=current.count + 1,
                duration_seconds=current.duration_seconds + duration_seconds,
            )

    @contextmanager
    def timed(self, kind: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record(kind, time.perf_counter() - start)

    def snapshot(self) -> dict[str, CallStats]:
        with self._lock:
            return dict(self._stats)


def monitored(kind: str) -> Callable[[F], F]:
    """Time a method call into `self.statistics` under the given kind."""

    def decorator(method: F) -> F:
        @functools.wraps(method)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            with self.statistics.timed(kind):
                return method(self, *args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


class Diagnostics:
    """Answers operator questions about the store.

    Args:
        engine: Engine of the store database.
        backend: Backend the engine talks to.
        statistics: Call statistics collected by the recorder and the queries.
        url: Database URL to display, password hidden.
    """

    def __init__(self, engine: Engine, backend: Backend, statistics: OperationStats, url: str) -> None:
        self.engine = engine
        self.backend = backend
        self.statistics = statistics
        self.url = url

    def schema_version(self) -> int:
        with sql_errors("read schema version"), self.engine.connect() as connection:
            return int(connection.execute(select(SchemaVersion.version)).scalar() or 0)

    def row_counts(self) -> dict[str, int]:
        """Count the rows of every data table.

        Returns:
            Row count per table name.

        Raises:
            StoreError: If a table cannot be counted.
        """
        with sql_errors("count rows"), self.engine.connect() as connection:
            return {
                table.__tablename__: connection.execute(select(func.count()).select_from(table)).scalar_one()
                for table in DATA_TABLES
            }

    def is_production_grade(self) -> bool:
        """Return True if the backend is adequate for the current amount of data.

        An embedded database holding too many edges is not, and neither is a
        database whose tables cannot be counted.
        """
        try:
            counts = self.row_counts()
        except StoreError as exc:
            logger.warning("Failure to count rows, assuming the database is not production grade: %s", exc)
            return False
        return self.backend.is_production_grade(counts)

    def describe_backend(self) -> str:
        with sql_errors("describe backend"), self.engine.connect() as connection:
            return self.backend.describe(connection)

    def to_pretty_string(self) -> str:
        """Return a multi-line summary of the backend, its tables and the call statistics."""
        try:
            description = self.describe_backend()
        except StoreError as exc:
            description = f"unknown version ({exc})"
        lines = [f"{self.backend.label} - {description}", f"\tURL: {self.url}"]

        try:
            lines.append(f"\tSchema version: {self.schema_version()}")
        except StoreError as exc:
            lines.append(f"\tSchema version: {exc}")

        with sql_errors("count rows"), self.engine.connect() as connection:
            for table in DATA_TABLES:
                name = table.__tablename__
                try:
                    count = connection.execute(select(func.count()).select_from(table)).scalar_one()
                    lines.append(f"\tTable {name}: {count} rows")
                except SQLAlchemyError as exc:
                    lines.append(f"\tTable {name}: {exc}")
                    connection.rollback()

        for kind, stats in sorted(self.statistics.snapshot().items()):
            lines.append(f"\tPerformances {kind}: count={stats.count}, total_duration_ms={stats.duration_ms}")
        return "\n".join(lines)
