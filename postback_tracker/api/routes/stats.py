"""Per-partner statistics endpoint."""

from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postback_tracker.api.deps import get_database
from postback_tracker.partners.registry import partner_registry
from postback_tracker.stats.store import stats_store

router = APIRouter(prefix="/api/stats", tags=["stats"])


class SummaryResponse(BaseModel):
    total_requests: int = 0
    successful_redirects: int = 0
    errors: int = 0
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DetailedStatResponse(BaseModel):
    """One processed postback."""
    id: int
    timestamp: datetime
    click_id: Optional[str]
    url: Optional[str]
    sum: Optional[float]
    sum_mapping: Optional[float]
    extra_params: Optional[dict[str, Any]]

    class Config:
        from_attributes = True


class PartnerStatsResponse(BaseModel):
    partner_id: str
    summary: SummaryResponse
    recent: List[DetailedStatResponse]


@router.get("/{partner_id}", response_model=PartnerStatsResponse)
async def get_partner_stats(
    partner_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_database),
):
    """Summary counters and the most recent detailed rows for a partner."""
    summary = await stats_store.get_summary(db, partner_id)
    if summary is None:
        partner = await partner_registry.get(db, partner_id)
        if partner is None:
            raise HTTPException(status_code=404, detail="Partner not found")

    recent = await stats_store.recent_events(db, partner_id, limit=limit)
    return PartnerStatsResponse(
        partner_id=partner_id,
        summary=SummaryResponse.model_validate(summary) if summary else SummaryResponse(),
        recent=[DetailedStatResponse.model_validate(row) for row in recent],
    )
