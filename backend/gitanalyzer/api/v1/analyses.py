from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status, BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession
from gitanalyzer.core import get_db
from gitanalyzer.core.errors import AnalysisInProgressError, InvalidRepositoryURLError, ProjectNotFoundError
from gitanalyzer.models import RunMode
from gitanalyzer.schemas import AnalysisStartRequest, AnalysisStartResponse
from gitanalyzer.services.analysis_service import run_analysis_task, start_analysis

router = APIRouter()


@router.post("", response_model=AnalysisStartResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_analysis(
    request: AnalysisStartRequest,
    background_tasks: BackgroundTasks,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    try:
        project, lease_token = await start_analysis(db, request)
    except InvalidRepositoryURLError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AnalysisInProgressError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Analysis already in progress")

    background_tasks.add_task(
        run_analysis_task,
        project.id,
        lease_token,
        request.analysis_types,
        depth=request.depth.value,
        use_cache=request.use_cache,
        queue_mode=request.mode == RunMode.QUEUE,
    )

    return AnalysisStartResponse(
        project_id=project.id,
        status=project.analysis_status,
        mode=request.mode,
    )
