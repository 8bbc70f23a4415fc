import uuid
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from gitanalyzer.core import get_db
from gitanalyzer.core.errors import QueueItemNotFoundError
from gitanalyzer.schemas import ProcessQueueItemResponse
from gitanalyzer.services.queue_service import process_queue_item

router = APIRouter()


@router.post("/{item_id}/process", response_model=ProcessQueueItemResponse)
async def process_item(
    item_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    try:
        return await process_queue_item(db, item_id)
    except QueueItemNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Queue item not found")
