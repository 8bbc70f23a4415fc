"""Single-flight runs per project, backed by the ``project_leases`` table.

A lease row is inserted when a run starts. A second start while the row is
live is rejected; a row whose ``expires_at`` has passed belongs to a crashed
run and may be taken over. The running orchestrator renews the lease before
each analysis type, which doubles as its cancellation check.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gitanalyzer.core.config import get_settings
from gitanalyzer.core.errors import AnalysisInProgressError
from gitanalyzer.models import ProjectLease

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ttl(ttl_seconds: int | None) -> timedelta:
    return timedelta(seconds=ttl_seconds or get_settings().lease_ttl_seconds)


async def acquire_lease(
    db: AsyncSession,
    project_id: uuid.UUID,
    ttl_seconds: int | None = None,
) -> uuid.UUID:
    """Take the project's lease or raise ``AnalysisInProgressError``."""
    token = uuid.uuid4()
    now = _now()
    db.add(ProjectLease(
        project_id=project_id,
        lease_token=token,
        acquired_at=now,
        expires_at=now + _ttl(ttl_seconds),
    ))
    try:
        await db.commit()
        return token
    except IntegrityError:
        await db.rollback()

    # Only an expired lease can be taken over
    result = await db.execute(
        update(ProjectLease)
        .where(ProjectLease.project_id == project_id, ProjectLease.expires_at < now)
        .values(lease_token=token, acquired_at=now, expires_at=now + _ttl(ttl_seconds))
    )
    await db.commit()
    if result.rowcount != 1:
        raise AnalysisInProgressError(project_id)
    logger.warning("Took over expired lease for project %s", project_id)
    return token


async def renew_lease(
    db: AsyncSession,
    project_id: uuid.UUID,
    token: uuid.UUID,
    ttl_seconds: int | None = None,
) -> bool:
    """Extend the lease if ``token`` still owns it; False means the run was cancelled."""
    result = await db.execute(
        update(ProjectLease)
        .where(ProjectLease.project_id == project_id, ProjectLease.lease_token == token)
        .values(expires_at=_now() + _ttl(ttl_seconds))
    )
    await db.commit()
    return result.rowcount == 1


async def get_lease(db: AsyncSession, project_id: uuid.UUID) -> ProjectLease | None:
    result = await db.execute(select(ProjectLease).where(ProjectLease.project_id == project_id))
    return result.scalar_one_or_none()


async def release_lease(
    db: AsyncSession,
    project_id: uuid.UUID,
    token: uuid.UUID | None = None,
) -> None:
    """Drop the lease; with a token, only if that token still owns it."""
    query = delete(ProjectLease).where(ProjectLease.project_id == project_id)
    if token is not None:
        query = query.where(ProjectLease.lease_token == token)
    await db.execute(query)
    await db.commit()
