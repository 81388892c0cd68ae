"""Queue monitoring endpoint."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postback_tracker.api.deps import get_database
from postback_tracker.queue.postback_queue import postback_queue

router = APIRouter(prefix="/api/queue", tags=["queue"])


class QueueStatsResponse(BaseModel):
    """Entry counts per status."""
    pending: int
    processing: int
    completed: int
    failed: int
    total: int
    oldest_pending_at: Optional[datetime] = None
    oldest_pending_age_seconds: Optional[float] = None


@router.get("/stats", response_model=QueueStatsResponse)
async def get_queue_stats(db: AsyncSession = Depends(get_database)):
    """Current queue depth and the age of the oldest pending entry."""
    counts = await postback_queue.status_counts(db)
    oldest = await postback_queue.oldest_pending_at(db)
    age = (datetime.utcnow() - oldest).total_seconds() if oldest else None

    return QueueStatsResponse(
        **counts,
        total=sum(counts.values()),
        oldest_pending_at=oldest,
        oldest_pending_age_seconds=age,
    )
