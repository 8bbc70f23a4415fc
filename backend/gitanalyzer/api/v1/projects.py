import uuid
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from gitanalyzer.core import get_db
from gitanalyzer.core.errors import ProjectNotFoundError
from gitanalyzer.models import Analysis, AnalysisQueueItem, AnalysisType, LEGACY_ANALYSIS_TYPES, Project
from gitanalyzer.schemas import AnalysisResponse, CancelResponse, ProjectStatusResponse, QueueItemResponse
from gitanalyzer.services.queue_service import cancel_analysis, finished_types

router = APIRouter()

READABLE_TYPES = {t.value for t in AnalysisType} | set(LEGACY_ANALYSIS_TYPES)


async def _get_project(db: AsyncSession, project_id: uuid.UUID) -> Project:
    project = await db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


@router.get("/{project_id}/status", response_model=ProjectStatusResponse)
async def get_project_status(
    project_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    project = await _get_project(db, project_id)

    items = await db.execute(
        select(AnalysisQueueItem)
        .where(AnalysisQueueItem.project_id == project_id)
        .order_by(AnalysisQueueItem.position, AnalysisQueueItem.created_at)
    )

    return ProjectStatusResponse(
        project_id=project.id,
        name=project.name,
        github_url=project.github_url,
        analysis_status=project.analysis_status,
        error_message=project.error_message,
        has_snapshot=bool(project.github_data),
        completed_types=await finished_types(db, project),
        queue=[QueueItemResponse.model_validate(item) for item in items.scalars().all()],
    )


@router.get("/{project_id}/analyses", response_model=list[AnalysisResponse])
async def list_project_analyses(
    project_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    type: str | None = Query(default=None, description="Return every version of this type"),
):
    """Latest analysis per type, or the full history of one type."""
    if type and type not in READABLE_TYPES:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unknown analysis type: {type}")
    await _get_project(db, project_id)

    query = select(Analysis).where(Analysis.project_id == project_id)
    if type:
        query = query.where(Analysis.type == type)
    result = await db.execute(query.order_by(Analysis.created_at.desc()))
    analyses = result.scalars().all()

    if type:
        return analyses

    latest: dict[str, Analysis] = {}
    for analysis in analyses:
        latest.setdefault(analysis.type, analysis)
    return list(latest.values())


@router.post("/{project_id}/cancel", response_model=CancelResponse)
async def cancel_project_analysis(
    project_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    try:
        return await cancel_analysis(db, project_id)
    except ProjectNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
