"""Durable postback queue backed by the postback_queue table.

State machine::

    pending -> processing -> completed
    pending -> processing -> pending      (retry, retry_count + 1)
    pending -> processing -> failed       (retry cap reached, or permanent error)

Every transition out of ``pending`` or ``processing`` is a conditional
UPDATE on the current status, so overlapping batch runs can never both own
the same entry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from postback_tracker.db.models import PostbackQueueEntry, QueueStatus

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


def _truncate(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return message[:MAX_ERROR_LENGTH]


class PostbackQueue:
    """Queue operations. Callers own the session; methods that commit say so."""

    async def enqueue(self, db: AsyncSession, partner_id: str, payload: dict[str, Any]) -> int:
        """
        Insert a pending entry and commit before returning.

        Returns:
            Assigned queue id
        """
        now = datetime.utcnow()
        entry = PostbackQueueEntry(
            partner_id=partner_id,
            data=payload,
            status=QueueStatus.PENDING,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        db.add(entry)
        await db.commit()
        return entry.id

    async def fetch_pending_ids(self, db: AsyncSession, limit: int) -> list[int]:
        """Ids of up to ``limit`` pending entries, oldest first."""
        query = (
            select(PostbackQueueEntry.id)
            .where(PostbackQueueEntry.status == QueueStatus.PENDING)
            .order_by(PostbackQueueEntry.created_at.asc(), PostbackQueueEntry.id.asc())
            .limit(limit)
        )
        result = await db.execute(query)
        return [row[0] for row in result.all()]

    async def claim(self, db: AsyncSession, entry_id: int) -> bool:
        """
        Atomically move an entry from pending to processing and commit.

        Returns:
            True if this caller now owns the entry, False if another run got it first
        """
        now = datetime.utcnow()
        result = await db.execute(
            update(PostbackQueueEntry)
            .where(
                PostbackQueueEntry.id == entry_id,
                PostbackQueueEntry.status == QueueStatus.PENDING,
            )
            .values(status=QueueStatus.PROCESSING, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def get(self, db: AsyncSession, entry_id: int) -> Optional[PostbackQueueEntry]:
        return await db.get(PostbackQueueEntry, entry_id, populate_existing=True)

    async def mark_completed(self, db: AsyncSession, entry_id: int) -> bool:
        """Mark a claimed entry completed. Does not commit."""
        result = await db.execute(
            update(PostbackQueueEntry)
            .where(
                PostbackQueueEntry.id == entry_id,
                PostbackQueueEntry.status == QueueStatus.PROCESSING,
            )
            .values(status=QueueStatus.COMPLETED, last_error=None, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_failed(self, db: AsyncSession, entry_id: int, error: str) -> bool:
        """Terminal failure without retry. Does not commit."""
        result = await db.execute(
            update(PostbackQueueEntry)
            .where(
                PostbackQueueEntry.id == entry_id,
                PostbackQueueEntry.status == QueueStatus.PROCESSING,
            )
            .values(
                status=QueueStatus.FAILED,
                last_error=_truncate(error),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def register_failure(
        self,
        db: AsyncSession,
        entry_id: int,
        error: str,
        max_retries: int,
    ) -> Optional[str]:
        """
        Count a failed attempt for a claimed entry. Does not commit.

        retry_count is incremented; below ``max_retries`` the entry goes back
        to pending, otherwise it is failed.

        Returns:
            New status, or None if the entry was no longer processing
        """
        entry = await self.get(db, entry_id)
        if entry is None or entry.status != QueueStatus.PROCESSING:
            return None

        retry_count = entry.retry_count + 1
        new_status = QueueStatus.PENDING if retry_count < max_retries else QueueStatus.FAILED

        result = await db.execute(
            update(PostbackQueueEntry)
            .where(
                PostbackQueueEntry.id == entry_id,
                PostbackQueueEntry.status == QueueStatus.PROCESSING,
                PostbackQueueEntry.retry_count == entry.retry_count,
            )
            .values(
                status=new_status,
                retry_count=retry_count,
                last_error=_truncate(error),
                claimed_at=None,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return new_status

    async def find_stale(
        self, db: AsyncSession, older_than: timedelta
    ) -> list[PostbackQueueEntry]:
        """Entries stuck in processing since before ``now - older_than``."""
        cutoff = datetime.utcnow() - older_than
        query = (
            select(PostbackQueueEntry)
            .where(
                PostbackQueueEntry.status == QueueStatus.PROCESSING,
                PostbackQueueEntry.claimed_at < cutoff,
            )
            .order_by(PostbackQueueEntry.claimed_at.asc())
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def cleanup_old_entries(
        self,
        db: AsyncSession,
        completed_days: int,
        failed_days: int,
    ) -> dict[str, int]:
        """Delete old terminal entries and commit."""
        now = datetime.utcnow()
        deleted = {}
        for status, days in (
            (QueueStatus.COMPLETED, completed_days),
            (QueueStatus.FAILED, failed_days),
        ):
            result = await db.execute(
                delete(PostbackQueueEntry)
                .where(
                    PostbackQueueEntry.status == status,
                    PostbackQueueEntry.updated_at < now - timedelta(days=days),
                )
                .execution_options(synchronize_session=False)
            )
            deleted[status] = result.rowcount or 0
        await db.commit()
        return deleted

    async def status_counts(self, db: AsyncSession) -> dict[str, int]:
        """Number of entries per status (all statuses present, zero-filled)."""
        result = await db.execute(
            select(PostbackQueueEntry.status, func.count(PostbackQueueEntry.id))
            .group_by(PostbackQueueEntry.status)
        )
        counts = {status: 0 for status in QueueStatus.ALL}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def oldest_pending_at(self, db: AsyncSession) -> Optional[datetime]:
        result = await db.execute(
            select(func.min(PostbackQueueEntry.created_at))
            .where(PostbackQueueEntry.status == QueueStatus.PENDING)
        )
        return result.scalar()


# Global queue instance
postback_queue = PostbackQueue()
