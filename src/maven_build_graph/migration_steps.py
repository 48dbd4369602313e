"""Programmatic migration steps.

A step runs right after the SQL script of the same version, inside the same
transaction, and receives the details of the hosting server instance.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from maven_build_graph.config import InstanceDetails
from maven_build_graph.db_models import Build, Job, ServerInstance

logger = logging.getLogger(__name__)

MigrationStep = Callable[[Connection, InstanceDetails], None]


def register_server_instance(connection: Connection, instance: InstanceDetails) -> None:
    """Create the server instance row for the hosting server."""
    existing = connection.execute(
        select(ServerInstance.id).where(
            ServerInstance.legacy_instance_id == instance.legacy_instance_id
        )
    ).first()
    if existing is not None:
        return
    connection.execute(
        insert(ServerInstance).values(
            legacy_instance_id=instance.legacy_instance_id,
            url=instance.root_url,
        )
    )
    logger.info("Registered server instance %s (%s)", instance.legacy_instance_id, instance.root_url)


def backfill_last_build_numbers(connection: Connection, instance: InstanceDetails) -> None:
    """Fill the new job build pointers from the builds already recorded.

    Build results were not tracked before this version, so the most recent
    build of each job is taken as its last successful build too.
    """
    latest = (
        select(func.max(Build.number))
        .where(Build.job_id == Job.id)
        .scalar_subquery()
    )
    result = connection.execute(
        update(Job).values(last_build_number=latest, last_successful_build_number=latest)
    )
    logger.info("Backfilled build pointers of %s job(s)", result.rowcount)


COMMON_STEPS: Mapping[int, MigrationStep] = {
    1: register_server_instance,
    2: backfill_last_build_numbers,
}
