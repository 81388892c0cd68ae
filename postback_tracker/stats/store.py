"""Statistics storage: detailed per-event rows and per-partner counters."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from postback_tracker.db.models import DetailedStat, SummaryStat
from postback_tracker.queue.payload import QueuePayload

logger = logging.getLogger(__name__)


def compute_event_key(
    partner_id: str,
    timestamp: str,
    click_id: Optional[str],
    queue_entry_id: Optional[int] = None,
) -> str:
    """
    Idempotency key for a detailed stats row.

    Hash of (partner_id, timestamp, click_id). Without a click id two
    conversions in the same second cannot be told apart, so the queue entry
    id stands in for it; reprocessing that entry still maps to the same row.
    A missing click id never hashes like an empty one.
    """
    if click_id is None:
        tail = "\x00" if queue_entry_id is None else f"\x00{queue_entry_id}"
    else:
        tail = click_id
    parts = [partner_id, timestamp, tail]
    return hashlib.sha256("\x1f".join(parts).encode()).hexdigest()


@dataclass
class ApplyResult:
    """Outcome of applying one event."""

    event_key: str
    inserted: bool


class StatsStore:
    """
    Applies processed postbacks to statistics tables.

    Nothing here commits: the caller wraps the detailed upsert, the summary
    increment and the queue status change in one transaction.
    """

    async def apply_event(
        self,
        db: AsyncSession,
        payload: QueuePayload,
        queue_entry_id: Optional[int] = None,
    ) -> ApplyResult:
        """
        Upsert the detailed row and count it in the summary.

        The summary is only incremented when the detailed row is new, so
        redelivering the same event leaves both tables unchanged.
        """
        event_key = compute_event_key(
            payload.partner_id, payload.timestamp, payload.click_id, queue_entry_id
        )
        timestamp = payload.captured_at

        result = await db.execute(
            select(DetailedStat).where(DetailedStat.event_key == event_key).with_for_update()
        )
        row = result.scalar_one_or_none()

        if row is not None:
            row.timestamp = timestamp
            row.click_id = payload.click_id
            row.url = payload.url
            row.sum = payload.sum
            row.sum_mapping = payload.sum_mapping
            row.extra_params = dict(payload.extra_params)
            row.queue_entry_id = queue_entry_id
            row.updated_at = datetime.utcnow()
            await db.flush()
            logger.debug("Updated detailed stats row %s for partner %s", event_key[:12], payload.partner_id)
            return ApplyResult(event_key=event_key, inserted=False)

        db.add(
            DetailedStat(
                event_key=event_key,
                partner_id=payload.partner_id,
                queue_entry_id=queue_entry_id,
                timestamp=timestamp,
                click_id=payload.click_id,
                url=payload.url,
                sum=payload.sum,
                sum_mapping=payload.sum_mapping,
                extra_params=dict(payload.extra_params),
            )
        )
        await db.flush()
        await self._increment(db, payload.partner_id, total_requests=1, successful_redirects=1)
        return ApplyResult(event_key=event_key, inserted=True)

    async def record_failure(self, db: AsyncSession, partner_id: str) -> None:
        """Count a terminally failed queue entry against the partner."""
        await self._increment(db, partner_id, errors=1)

    async def get_summary(self, db: AsyncSession, partner_id: str) -> Optional[SummaryStat]:
        return await db.get(SummaryStat, partner_id, populate_existing=True)

    async def recent_events(
        self, db: AsyncSession, partner_id: str, limit: int = 50
    ) -> list[DetailedStat]:
        """Most recent detailed rows for a partner, newest first."""
        query = (
            select(DetailedStat)
            .where(DetailedStat.partner_id == partner_id)
            .order_by(DetailedStat.timestamp.desc(), DetailedStat.id.desc())
            .limit(limit)
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def _increment(
        self,
        db: AsyncSession,
        partner_id: str,
        total_requests: int = 0,
        successful_redirects: int = 0,
        errors: int = 0,
    ) -> None:
        """Add to the partner's counters, creating the row on first use."""
        result = await db.execute(
            update(SummaryStat)
            .where(SummaryStat.partner_id == partner_id)
            .values(
                total_requests=SummaryStat.total_requests + total_requests,
                successful_redirects=SummaryStat.successful_redirects + successful_redirects,
                errors=SummaryStat.errors + errors,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # A concurrent first insert raises IntegrityError and the caller retries
            db.add(
                SummaryStat(
                    partner_id=partner_id,
                    total_requests=total_requests,
                    successful_redirects=successful_redirects,
                    errors=errors,
                )
            )
            await db.flush()


# Global stats store instance
stats_store = StatsStore()
