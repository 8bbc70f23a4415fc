"""Per-item processing and cancellation for queue-mode runs."""
import uuid
import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gitanalyzer.core.errors import (
    ExhaustedRetriesError,
    LLMRequestError,
    MissingCredentialsError,
    ProjectNotFoundError,
    QueueItemNotFoundError,
    SnapshotMissingError,
)
from gitanalyzer.models import Analysis, AnalysisQueueItem, Project, ProjectStatus, QueueStatus
from gitanalyzer.schemas import CancelResponse, ProcessQueueItemResponse
from gitanalyzer.services.analysis_service import AnalysisOrchestrator
from gitanalyzer.services.depth_config import load_depth_config
from gitanalyzer.services.lease_service import release_lease
from gitanalyzer.services.llm_invoker import LLMInvoker
from gitanalyzer.services.prompt_resolver import load_prompt_templates
from gitanalyzer.services.snapshot_cache import build_project_context, read_snapshot, truncate_context

logger = logging.getLogger(__name__)

ALREADY_PROCESSING = "already_processing"
ALREADY_COMPLETED = "already_completed"

ITEM_ERRORS = (
    LLMRequestError,
    ExhaustedRetriesError,
    MissingCredentialsError,
    SnapshotMissingError,
    ProjectNotFoundError,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def finished_types(db: AsyncSession, project: Project) -> list[str]:
    """Analysis types finished in the project's current run, in completion order."""
    query = select(Analysis.type, func.min(Analysis.created_at).label("first_at")).where(
        Analysis.project_id == project.id
    )
    if project.run_started_at is not None:
        query = query.where(Analysis.created_at >= project.run_started_at)
    rows = await db.execute(query.group_by(Analysis.type).order_by("first_at"))
    types = [row.type for row in rows]

    item_query = select(AnalysisQueueItem.analysis_type).where(
        AnalysisQueueItem.project_id == project.id,
        AnalysisQueueItem.status == QueueStatus.COMPLETED.value,
    )
    if project.run_started_at is not None:
        item_query = item_query.where(AnalysisQueueItem.completed_at >= project.run_started_at)
    completed_items = await db.execute(item_query.order_by(AnalysisQueueItem.position))
    for analysis_type in completed_items.scalars():
        if analysis_type not in types:
            types.append(analysis_type)
    return types


async def _open_item_count(db: AsyncSession, project_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(AnalysisQueueItem)
        .where(
            AnalysisQueueItem.project_id == project_id,
            AnalysisQueueItem.status.in_([QueueStatus.PENDING.value, QueueStatus.PROCESSING.value]),
        )
    )
    return result.scalar_one()


async def _finish_if_drained(db: AsyncSession, project: Project) -> None:
    if await _open_item_count(db, project.id):
        return
    project.analysis_status = ProjectStatus.COMPLETED.value
    project.error_message = None
    await db.commit()
    await release_lease(db, project.id)
    logger.info("Queue for project %s drained", project.id)


async def _fail_item(
    db: AsyncSession,
    item_id: uuid.UUID,
    project_id: uuid.UUID,
    error: Exception,
) -> AnalysisQueueItem:
    # A failed flush leaves the session unusable until rolled back
    await db.rollback()
    item = await db.get(AnalysisQueueItem, item_id)
    item.status = QueueStatus.ERROR.value
    item.error_message = str(error)
    item.retry_count = (item.retry_count or 0) + 1
    await db.commit()

    project = await db.get(Project, project_id)
    if project:
        await _finish_if_drained(db, project)
    return item


async def process_queue_item(
    db: AsyncSession,
    item_id: uuid.UUID,
    llm: LLMInvoker | None = None,
) -> ProcessQueueItemResponse:
    item = await db.get(AnalysisQueueItem, item_id)
    if not item:
        raise QueueItemNotFoundError(f"Queue item {item_id} not found")

    if item.status == QueueStatus.PROCESSING.value:
        return ProcessQueueItemResponse(
            queue_item_id=item.id, analysis_type=item.analysis_type, status=ALREADY_PROCESSING,
        )
    if item.status == QueueStatus.COMPLETED.value:
        return ProcessQueueItemResponse(
            queue_item_id=item.id, analysis_type=item.analysis_type, status=ALREADY_COMPLETED,
        )

    item.status = QueueStatus.PROCESSING.value
    item.started_at = _utc_now()
    item.error_message = None
    await db.commit()
    logger.info("Processing queue item %s (%s)", item.id, item.analysis_type)

    project_id = item.project_id
    orchestrator = AnalysisOrchestrator(db, llm=llm)
    try:
        project = await db.get(Project, project_id)
        if not project:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        snapshot = read_snapshot(project)
        if snapshot is None:
            raise SnapshotMissingError(f"Project {project.id} has no extracted snapshot")
        depth_config = await load_depth_config(db, item.depth_level)
        context = truncate_context(
            build_project_context(project.name, project.github_url, snapshot),
            depth_config.max_context_chars,
        )
        templates = await load_prompt_templates(db)
        await orchestrator.generate_analysis_type(
            project, item.analysis_type, item.depth_level, depth_config,
            context, snapshot, templates, user_id=item.user_id,
        )
    except ITEM_ERRORS as e:
        logger.error("Queue item %s failed: %s", item_id, e)
        item = await _fail_item(db, item_id, project_id, e)
        return ProcessQueueItemResponse(
            queue_item_id=item.id, analysis_type=item.analysis_type, status=item.status, error=str(e),
        )
    except Exception as e:
        logger.exception("Queue item %s failed", item_id)
        await _fail_item(db, item_id, project_id, e)
        raise

    item.status = QueueStatus.COMPLETED.value
    item.completed_at = _utc_now()
    await db.commit()
    await _finish_if_drained(db, project)
    return ProcessQueueItemResponse(
        queue_item_id=item.id, analysis_type=item.analysis_type, status=item.status,
    )


async def cancel_analysis(db: AsyncSession, project_id: uuid.UUID) -> CancelResponse:
    """Drop pending queue items and end the run.

    Partial results are kept: with at least one finished type the project is
    ``completed``, otherwise its status is left for the caller to abandon.
    In-flight work is not interrupted; the background run stops before its
    next type because its lease is gone.
    """
    project = await db.get(Project, project_id)
    if not project:
        raise ProjectNotFoundError(f"Project {project_id} not found")

    result = await db.execute(
        delete(AnalysisQueueItem).where(
            AnalysisQueueItem.project_id == project_id,
            AnalysisQueueItem.status == QueueStatus.PENDING.value,
        )
    )
    removed = result.rowcount or 0
    await release_lease(db, project_id)

    done = await finished_types(db, project)
    if done:
        project.analysis_status = ProjectStatus.COMPLETED.value
        project.error_message = None
        await db.commit()
    logger.info("Cancelled run for project %s (%d pending items removed)", project_id, removed)

    return CancelResponse(
        project_id=project.id,
        analysis_status=project.analysis_status,
        removed_items=removed,
        completed_types=done,
    )
