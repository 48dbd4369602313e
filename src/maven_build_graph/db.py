"""Database engine creation and lifecycle.

Supports an embedded SQLite file and PostgreSQL, MySQL or MariaDB servers.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import (
    ArgumentError,
    IntegrityError,
    InterfaceError,
    NoSuchModuleError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlmodel import Session, create_engine

from maven_build_graph.backends import WRITE_TRANSACTION, Backend, backend_for_url
from maven_build_graph.config import StoreConfig
from maven_build_graph.exceptions import (
    ConfigurationError,
    DriverNotAvailableError,
    IntegrityStoreError,
    StoreError,
    TransientStoreError,
)

logger = logging.getLogger(__name__)


@contextmanager
def sql_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy errors raised inside the block into store errors.

    Args:
        operation: Short description of the store call, used in the message.

    Raises:
        IntegrityStoreError: On constraint violations.
        TransientStoreError: On connection, pool or lock failures.
        StoreError: On any other database failure.
    """
    try:
        yield
    except IntegrityError as exc:
        raise IntegrityStoreError(f"{operation} failed: {exc.orig}") from exc
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        raise TransientStoreError(f"{operation} failed: {exc}") from exc
    except SQLAlchemyError as exc:
        raise StoreError(f"{operation} failed: {exc}") from exc



def begin_write(session: Session) -> Connection:
    """Start the transaction of a fresh session as a write transaction.

    Must be called before the session runs any statement. On SQLite the
    write lock is taken right away; other backends ignore the marker.
    """
    return session.connection(execution_options={WRITE_TRANSACTION: True})

class ConnectionProvider:
    """Owns the pooled engine of one backend.

    Connections handed out by the engine never auto-commit: every store call
    commits or rolls back its own transaction.
    """

    def __init__(self, config: StoreConfig, backend: Backend | None = None) -> None:
        self.config = config
        self.backend = backend or backend_for_url(config.url)
        self._engine: Engine | None = None
        self._closed = False

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise StoreError("Connection provider is not open")
        return self._engine

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> Engine:
        """Create the pooled engine.

        Returns:
            The SQLAlchemy Engine of the configured backend.

        Raises:
            ConfigurationError: If the configuration is rejected by the backend.
            DriverNotAvailableError: If the driver package is not installed.
        """
        if self._engine is not None:
            return self._engine

        backend = self.backend
        backend.check_driver()
        url = backend.engine_url(self.config)
        options = backend.engine_options(self.config)

        logger.info(
            "Connect to database %s with username %s",
            url.render_as_string(hide_password=True),
            url.username,
        )
        try:
            engine = create_engine(url, **options)
        except (ImportError, NoSuchModuleError) as exc:
            raise DriverNotAvailableError(f"{backend.label} driver could not be loaded: {exc}") from exc
        except (TypeError, ArgumentError) as exc:
            raise ConfigurationError(f"Invalid database properties: {exc}") from exc
        backend.configure_engine(engine)
        applied = {k: v for k, v in options.items() if k not in {"poolclass", "connect_args"}}
        logger.info("Applied pool properties %s", applied)

        self._engine = engine
        self._closed = False
        return engine

    def close(self) -> None:
        """Shut the backend down and release pooled connections.

        Does nothing when the provider is already closed. Shutdown failures
        are logged, never raised.
        """
        if self._closed or self._engine is None:
            return
        engine = self._engine
        try:
            self.backend.shutdown(engine)
        except Exception as exc:
            logger.warning("Failure to shut down %s: %s", self.backend.label, exc)
        finally:
            engine.dispose()
            self._engine = None
            self._closed = True
