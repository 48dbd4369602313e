"""Surrogate key resolution for artifacts, jobs, builds and the server instance.

Get-or-create runs inside the caller's write transaction, under an in-process
lock held per logical key: two callers resolving the same artifact wait for
each other, callers resolving different artifacts do not. Each insert runs in
a savepoint, so a unique constraint violation raised by a concurrent writer
only rolls back that insert before the row is read again.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from maven_build_graph.config import InstanceDetails
from maven_build_graph.db import begin_write, sql_errors
from maven_build_graph.db_models import Artifact, Build, Job, ServerInstance
from maven_build_graph.exceptions import IntegrityStoreError
from maven_build_graph.models import ArtifactCoordinate

logger = logging.getLogger(__name__)


def classifier_matches(column: Any, classifier: str | None) -> Any:
    """Return the SQL condition matching a classifier, `IS NULL` when absent."""
    if classifier is None:
        return column.is_(None)
    return column == classifier


def find_artifact_id(session: Session, coordinate: ArtifactCoordinate) -> int | None:
    statement = select(Artifact.id).where(
        Artifact.group_id == coordinate.group_id,
        Artifact.artifact_id == coordinate.artifact_id,
        Artifact.version == coordinate.version,
        Artifact.type == coordinate.type,
        classifier_matches(Artifact.classifier, coordinate.classifier),
    )
    return session.exec(statement).first()


def find_job(session: Session, server_instance_id: int, full_name: str) -> Job | None:
    statement = select(Job).where(
        Job.full_name == full_name,
        Job.server_instance_id == server_instance_id,
    )
    return session.exec(statement).first()


def find_build(session: Session, job_id: int, number: int) -> Build | None:
    statement = select(Build).where(Build.job_id == job_id, Build.number == number)
    return session.exec(statement).first()


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLock:
    """A family of mutexes, one per key, created on demand and dropped when idle."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _LockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, _LockEntry())
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class ServerInstanceCache:
    """Resolves and memoizes the key of the hosting server instance.

    The row is looked up by its legacy id. It is created when missing, and its
    URL is only written when it differs from the configured root URL. The
    lookup commits on its own, so callers resolve the key before opening
    their write transaction.
    """

    def __init__(self, instance: InstanceDetails) -> None:
        self.instance = instance
        self._key: int | None = None
        self._lock = threading.Lock()

    def resolve(self, engine: Engine) -> int:
        with self._lock:
            if self._key is None:
                self._key = self._refresh(engine)
            return self._key

    def invalidate(self) -> None:
        with self._lock:
            self._key = None

    def _refresh(self, engine: Engine) -> int:
        legacy_id = self.instance.legacy_instance_id
        root_url = self.instance.root_url
        with sql_errors("resolve server instance"), Session(engine) as session:
            begin_write(session)
            row = session.exec(
                select(ServerInstance).where(ServerInstance.legacy_instance_id == legacy_id)
            ).first()
            if row is None:
                row = ServerInstance(legacy_instance_id=legacy_id, url=root_url)
                session.add(row)
                session.flush()
                logger.info("Created server instance %s with url %s", legacy_id, root_url)
            elif row.url != root_url:
                logger.info("Update url of server instance %s from %s to %s", legacy_id, row.url, root_url)
                row.url = root_url
                session.add(row)
            key = row.id
            session.commit()
        return key


class IdentityResolver:
    """Get-or-create surrogate keys.

    Every method accepts the caller's session, so that the rows it creates
    commit or roll back together with the caller's own writes. The session
    must already be in a write transaction, see `db.begin_write`, opened after
    `server_instance_key` was resolved once. Without a session, the method runs
    and commits its own write transaction.

    Args:
        engine: Engine of the store database.
        server_instance: Cache resolving the hosting server instance.
    """

    def __init__(self, engine: Engine, server_instance: ServerInstanceCache) -> None:
        self.engine = engine
        self.server_instance = server_instance
        self._locks = KeyedLock()

    def server_instance_key(self) -> int:
        return self.server_instance.resolve(self.engine)

    def get_or_create_artifact(self, coordinate: ArtifactCoordinate, session: Session | None = None) -> int:
        """Return the key of an artifact, inserting the row when missing.

        Args:
            coordinate: Full coordinate, `classifier=None` included.
            session: Write session to run in. Defaults to a transaction of its own.

        Returns:
            The artifact key.

        Raises:
            StoreError: If the database call fails.
        """
        operation = f"get or create artifact {coordinate.id}"
        with self._transaction(session, operation) as s:
            return self._artifact(s, coordinate)

    def get_or_create_job(self, job_full_name: str, session: Session | None = None) -> int:
        server_instance_id = self.server_instance_key()
        with self._transaction(session, f"get or create job {job_full_name}") as s:
            return self._job(s, server_instance_id, job_full_name)

    def get_or_create_build(self, job_full_name: str, build_number: int, session: Session | None = None) -> int:
        """Return the key of a build, creating the job and the build when missing.

        Args:
            job_full_name: Full name of the job.
            build_number: Build number within the job.
            session: Write session to run in. Defaults to a transaction of its own.

        Returns:
            The build key.
        """
        server_instance_id = self.server_instance_key()
        operation = f"get or create build {job_full_name}#{build_number}"
        with self._transaction(session, operation) as s:
            job_id = self._job(s, server_instance_id, job_full_name)
            return self._build(s, job_id, job_full_name, build_number)

    @contextmanager
    def _transaction(self, session: Session | None, operation: str) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with sql_errors(operation), Session(self.engine) as own:
            begin_write(own)
            yield own
            own.commit()

    def _artifact(self, session: Session, coordinate: ArtifactCoordinate) -> int:
        with self._locks.hold(("artifact", coordinate)):
            return self._get_or_create(
                session,
                f"get or create artifact {coordinate.id}",
                lambda s: find_artifact_id(s, coordinate),
                lambda: Artifact(
                    group_id=coordinate.group_id,
                    artifact_id=coordinate.artifact_id,
                    version=coordinate.version,
                    type=coordinate.type,
                    classifier=coordinate.classifier,
                ),
            )

    def _job(self, session: Session, server_instance_id: int, job_full_name: str) -> int:
        def find(s: Session) -> int | None:
            job = find_job(s, server_instance_id, job_full_name)
            return job.id if job is not None else None

        with self._locks.hold(("job", server_instance_id, job_full_name)):
            return self._get_or_create(
                session,
                f"get or create job {job_full_name}",
                find,
                lambda: Job(full_name=job_full_name, server_instance_id=server_instance_id),
            )

    def _build(self, session: Session, job_id: int, job_full_name: str, build_number: int) -> int:
        def find(s: Session) -> int | None:
            build = find_build(s, job_id, build_number)
            return build.id if build is not None else None

        with self._locks.hold(("build", job_id, build_number)):
            return self._get_or_create(
                session,
                f"get or create build {job_full_name}#{build_number}",
                find,
                lambda: Build(job_id=job_id, number=build_number),
            )

    def _get_or_create(
        self,
        session: Session,
        operation: str,
        find: Callable[[Session], int | None],
        create: Callable[[], SQLModel],
    ) -> int:
        key = find(session)
        if key is not None:
            return key
        row = create()
        try:
            with session.begin_nested():
                session.add(row)
        except IntegrityError:
            # Only the savepoint is rolled back, the caller's writes stay.
            logger.debug("%s: concurrent insert detected, reading again", operation)
            key = find(session)
            if key is None:
                raise IntegrityStoreError(f"{operation} failed: row vanished after a concurrent insert") from None
            return key
        logger.debug("%s: created %s", operation, row.id)
        return row.id
