"""Queue processor: applies pending postbacks to statistics.

Each run claims up to ``batch_size`` pending entries and handles them one by
one. Per entry:

1. Claim (pending -> processing, conditional update).
2. In one transaction: upsert the detailed stats row, bump the summary
   counters, mark the entry completed.
3. After commit: Telegram notification and sheet export, best-effort.

A failure in step 2 rolls the whole transaction back and feeds the retry
policy; one entry failing never affects the others in the batch.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postback_tracker import metrics
from postback_tracker.config import settings
from postback_tracker.db.models import QueueStatus
from postback_tracker.db.session import AsyncSessionLocal
from postback_tracker.errors import ConfigurationError, PermanentFailure, TransientProcessingError
from postback_tracker.logging_config import get_logger
from postback_tracker.notify.sheets import SheetExporter, sheet_exporter
from postback_tracker.notify.telegram import TelegramNotifier, telegram_notifier
from postback_tracker.partners.registry import (
    GlobalSettingsSnapshot,
    PartnerConfig,
    PartnerRegistry,
    partner_registry,
)
from postback_tracker.queue.payload import QueuePayload
from postback_tracker.queue.postback_queue import PostbackQueue, postback_queue
from postback_tracker.stats.store import StatsStore, stats_store

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


class ClaimLostError(TransientProcessingError):
    """The entry stopped being ours (reclaimed as stale) before we could complete it."""


@dataclass
class BatchSummary:
    """Counts for one run_batch call."""

    selected: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    reclaimed: int = 0
    outcomes: dict[int, str] = field(default_factory=dict)

    def record(self, entry_id: int, outcome: str) -> None:
        self.outcomes[entry_id] = outcome
        if outcome == OUTCOME_COMPLETED:
            self.completed += 1
        elif outcome == OUTCOME_RETRY:
            self.retried += 1
        elif outcome == OUTCOME_FAILED:
            self.failed += 1
        else:
            self.skipped += 1


class QueueProcessor:
    """Processes pending postback queue entries in bounded batches."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        queue: PostbackQueue = postback_queue,
        stats: StatsStore = stats_store,
        registry: PartnerRegistry = partner_registry,
        notifier: TelegramNotifier = telegram_notifier,
        exporter: SheetExporter = sheet_exporter,
        max_retries: Optional[int] = None,
        stale_after_seconds: Optional[int] = None,
        side_effect_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.stats = stats
        self.registry = registry
        self.notifier = notifier
        self.exporter = exporter
        self.max_retries = max_retries if max_retries is not None else settings.queue_max_retries
        self.stale_after = timedelta(
            seconds=stale_after_seconds
            if stale_after_seconds is not None
            else settings.queue_stale_processing_seconds
        )
        self.side_effect_timeout = (
            side_effect_timeout if side_effect_timeout is not None else settings.http_timeout_seconds
        )

    async def load_global_settings(self) -> GlobalSettingsSnapshot:
        async with self.session_factory() as db:
            return await self.registry.load_global_settings(db)

    async def run_batch(self, limit: Optional[int] = None) -> BatchSummary:
        """
        Process up to ``limit`` pending entries, oldest first.

        Stale processing claims are reclaimed first, and the global settings
        snapshot is loaded once for the whole run.

        Args:
            limit: Batch size (defaults to settings.queue_batch_size)

        Returns:
            BatchSummary
        """
        if limit is None:
            limit = settings.queue_batch_size
        started = time.monotonic()
        summary = BatchSummary()

        summary.reclaimed = await self.reclaim_stale()

        global_settings = await self.load_global_settings()
        async with self.session_factory() as db:
            entry_ids = await self.queue.fetch_pending_ids(db, limit)

        summary.selected = len(entry_ids)
        if not entry_ids:
            logger.debug("No pending postbacks to process")
            metrics.queue_batch_duration_seconds.observe(time.monotonic() - started)
            return summary

        logger.info("Processing %d postbacks...", len(entry_ids))
        for entry_id in entry_ids:
            outcome = await self.process_entry(entry_id, global_settings)
            summary.record(entry_id, outcome)
            if outcome != OUTCOME_SKIPPED:
                metrics.record_entry_processed(outcome)

        duration = time.monotonic() - started
        metrics.queue_batch_duration_seconds.observe(duration)
        logger.info(
            "Finished processing postbacks: %d completed, %d retried, %d failed, %d skipped (%.2fs)",
            summary.completed,
            summary.retried,
            summary.failed,
            summary.skipped,
            duration,
        )
        return summary

    async def process_entry(
        self,
        entry_id: int,
        global_settings: Optional[GlobalSettingsSnapshot] = None,
    ) -> str:
        """
        Claim and process one queue entry.

        Returns:
            One of "completed", "retry", "failed", "skipped"
        """
        log = get_logger(__name__, queue_id=entry_id)

        try:
            async with self.session_factory() as db:
                claimed = await self.queue.claim(db, entry_id)
        except SQLAlchemyError as e:
            log.error("Could not claim queue ID %s: %s", entry_id, e)
            return OUTCOME_SKIPPED

        if not claimed:
            log.debug("Queue ID %s already claimed by another run", entry_id)
            return OUTCOME_SKIPPED

        try:
            event, partner, inserted = await self._apply(entry_id)
        except ClaimLostError:
            log.warning("Queue ID %s was reclaimed before completion; discarding this attempt", entry_id)
            return OUTCOME_SKIPPED
        except PermanentFailure as e:
            return await self._fail_permanently(entry_id, str(e))
        except Exception as e:
            # Storage errors and anything unexpected are retried up to the cap
            return await self._handle_failure(entry_id, e)

        log.info("Successfully processed queue ID: %s", entry_id)

        if not inserted:
            log.debug("Queue ID %s repeats an already counted event; skipping notifications", entry_id)
            return OUTCOME_COMPLETED

        if global_settings is None:
            try:
                global_settings = await self.load_global_settings()
            except SQLAlchemyError as e:
                log.warning("Could not load global settings for side effects: %s", e)
                global_settings = GlobalSettingsSnapshot()

        await self._dispatch_side_effects(event, partner, global_settings)
        return OUTCOME_COMPLETED

    async def _apply(self, entry_id: int) -> tuple[QueuePayload, PartnerConfig, bool]:
        """Apply one claimed entry in a single transaction and commit."""
        async with self.session_factory() as db:
            entry = await self.queue.get(db, entry_id)
            if entry is None:
                raise ConfigurationError(f"Queue entry {entry_id} disappeared")

            try:
                if isinstance(entry.data, str):
                    event = QueuePayload.model_validate_json(entry.data)
                else:
                    event = QueuePayload.model_validate(entry.data)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid data for queue ID {entry_id}: {e}") from e

            partner = await self.registry.get(db, entry.partner_id)
            if partner is None:
                raise ConfigurationError(f"Partner not found for queue ID {entry_id}")

            result = await self.stats.apply_event(db, event, queue_entry_id=entry_id)

            if not await self.queue.mark_completed(db, entry_id):
                await db.rollback()
                raise ClaimLostError(f"Queue ID {entry_id} is no longer processing")

            await db.commit()
            return event, partner, result.inserted

    async def _fail_permanently(self, entry_id: int, error: str) -> str:
        """Permanent failures (configuration errors) skip the retry policy."""
        logger.error("Queue ID %s failed permanently: %s", entry_id, error)
        try:
            async with self.session_factory() as db:
                entry = await self.queue.get(db, entry_id)
                if entry is None:
                    return OUTCOME_FAILED
                if await self.queue.mark_failed(db, entry_id, error):
                    await self.stats.record_failure(db, entry.partner_id)
                await db.commit()
        except SQLAlchemyError as e:
            # Entry stays in processing and is reclaimed once stale
            logger.error("Error marking queue ID %s failed: %s", entry_id, e)
        return OUTCOME_FAILED

    async def _handle_failure(self, entry_id: int, error: Exception) -> str:
        """Retry policy for transient failures."""
        message = f"{type(error).__name__}: {error}"
        try:
            async with self.session_factory() as db:
                entry = await self.queue.get(db, entry_id)
                if entry is None:
                    return OUTCOME_SKIPPED
                attempt = entry.retry_count + 1
                new_status = await self.queue.register_failure(
                    db, entry_id, message, self.max_retries
                )
                if new_status == QueueStatus.FAILED:
                    await self.stats.record_failure(db, entry.partner_id)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Error handling postback failure for ID %s: %s", entry_id, e)
            return OUTCOME_RETRY

        if new_status == QueueStatus.PENDING:
            logger.warning(
                "Retrying queue ID: %s (attempt %d). Error: %s",
                entry_id,
                attempt,
                message,
                exc_info=error,
            )
            return OUTCOME_RETRY
        if new_status == QueueStatus.FAILED:
            logger.error(
                "Failed to process queue ID: %s after %d attempts. Error: %s",
                entry_id,
                attempt,
                message,
                exc_info=error,
            )
            return OUTCOME_FAILED
        return OUTCOME_SKIPPED

    async def _dispatch_side_effects(
        self,
        event: QueuePayload,
        partner: PartnerConfig,
        global_settings: GlobalSettingsSnapshot,
    ) -> None:
        """Notification and export; failures are logged and never change the entry."""
        side_effects = (
            ("telegram", self.notifier.notify),
            ("sheets", self.exporter.export),
        )
        for name, call in side_effects:
            try:
                await asyncio.wait_for(
                    call(event, partner, global_settings),
                    timeout=self.side_effect_timeout,
                )
            except Exception as e:
                logger.warning(
                    "Best-effort %s side effect failed for partner %s: %s",
                    name,
                    partner.id,
                    e,
                )
                metrics.record_notification(name, success=False)

    async def reclaim_stale(self) -> int:
        """
        Put entries stuck in processing back into circulation.

        A stale claim counts as one failed attempt, so a run that keeps
        crashing on the same entry still ends in failed.

        Returns:
            Number of entries reclaimed
        """
        reclaimed = 0
        try:
            async with self.session_factory() as db:
                stale_entries = await self.queue.find_stale(db, self.stale_after)
                for entry in stale_entries:
                    partner_id = entry.partner_id
                    new_status = await self.queue.register_failure(
                        db,
                        entry.id,
                        "Stale processing claim reclaimed",
                        self.max_retries,
                    )
                    if new_status is None:
                        continue
                    if new_status == QueueStatus.FAILED:
                        await self.stats.record_failure(db, partner_id)
                    reclaimed += 1
                    logger.warning("Reclaimed stale queue ID %s -> %s", entry.id, new_status)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Stale claim recovery failed: %s", e)
            return 0

        metrics.record_entries_reclaimed(reclaimed)
        return reclaimed

    async def cleanup(self) -> dict[str, int]:
        """Delete old completed/failed entries."""
        async with self.session_factory() as db:
            deleted = await self.queue.cleanup_old_entries(
                db,
                completed_days=settings.queue_completed_retention_days,
                failed_days=settings.queue_failed_retention_days,
            )
        logger.info(
            "Queue cleanup completed: %d completed and %d failed entries removed",
            deleted.get(QueueStatus.COMPLETED, 0),
            deleted.get(QueueStatus.FAILED, 0),
        )
        return deleted

    async def close(self):
        """Close outbound HTTP clients."""
        await self.notifier.close()
        await self.exporter.close()


# Global processor instance
queue_processor = QueueProcessor()
