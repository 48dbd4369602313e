"""Custom exceptions for maven-build-graph."""


class BuildGraphError(Exception):
    """Base exception for maven-build-graph."""


class ConfigurationError(BuildGraphError, ValueError):
    """Raised when the store configuration is invalid or incomplete."""


class DriverNotAvailableError(ConfigurationError):
    """Raised when the database driver for the configured backend is not installed."""


class MigrationError(BuildGraphError):
    """Raised when a schema migration unit cannot be applied."""


class MigrationScriptsNotFoundError(MigrationError):
    """Raised when no migration script could be found at all."""


class StoreError(BuildGraphError):
    """Raised when a store operation fails in the database."""


class TransientStoreError(StoreError):
    """Raised on connection drops, pool exhaustion or lock timeouts.

    The store never retries on its own. Callers may retry, knowing that a
    retried write can record the same edge twice.
    """


class IntegrityStoreError(StoreError):
    """Raised when a statement violates a database constraint."""
