"""Ingestion gate: validate an inbound postback and durably enqueue it.

This path only records intent. Notifications and exports happen later in
the queue processor, so a crash after the insert cannot lose the event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from postback_tracker.config import settings
from postback_tracker.errors import (
    IpNotAllowedError,
    MissingPartnerIdError,
    PartnerNotFoundError,
    StorageError,
)
from postback_tracker.ingest.extractor import Params, first_value, extract_fields
from postback_tracker.partners.registry import PartnerConfig, PartnerRegistry, partner_registry
from postback_tracker.queue.payload import QueuePayload, format_timestamp
from postback_tracker.queue.postback_queue import PostbackQueue, postback_queue

logger = logging.getLogger(__name__)


@dataclass
class InboundRequest:
    """Transport-independent view of an inbound postback request."""

    method: str
    url: str
    client_ip: str
    user_agent: str = ""
    query: Params = field(default_factory=dict)
    body: Params = field(default_factory=dict)

    def partner_id(self, key: str) -> Optional[str]:
        """Partner id from the query, then the body.

        A key present in the query wins even when its value is empty.
        """
        for source in (self.query, self.body):
            if key in source:
                value = first_value(source[key])
                return value.strip() if value else None
        return None


class IngestionGate:
    """Validates postbacks against partner configuration and enqueues them."""

    def __init__(
        self,
        registry: PartnerRegistry = partner_registry,
        queue: PostbackQueue = postback_queue,
        partner_id_key: Optional[str] = None,
    ):
        self.registry = registry
        self.queue = queue
        self.partner_id_key = partner_id_key or settings.partner_id_param

    async def ingest(self, db: AsyncSession, request: InboundRequest) -> int:
        """
        Validate and enqueue one postback.

        Args:
            db: Database session
            request: Inbound request

        Returns:
            Assigned queue id

        Raises:
            MissingPartnerIdError: pid absent or empty (400)
            PartnerNotFoundError: unknown partner (404)
            IpNotAllowedError: source IP outside the partner's whitelist (403)
            StorageError: partner lookup or queue insert failed (500)
        """
        partner_id = request.partner_id(self.partner_id_key)
        if not partner_id:
            raise MissingPartnerIdError()

        try:
            partner = await self.registry.get(db, partner_id)
        except SQLAlchemyError as e:
            logger.error("Database error looking up partner %s: %s", partner_id, e)
            raise StorageError("Database error") from e

        if partner is None:
            raise PartnerNotFoundError()

        self._check_ip(partner, request.client_ip)

        payload = self.build_payload(partner, request)

        try:
            queue_id = await self.queue.enqueue(db, partner.id, payload.model_dump())
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Failed to queue postback for partner %s: %s", partner.id, e)
            raise StorageError("Failed to queue postback") from e

        if partner.logging_enabled:
            logger.info("Postback queued for partner %s, queue ID: %s", partner.id, queue_id)
        return queue_id

    def _check_ip(self, partner: PartnerConfig, client_ip: str) -> None:
        """Exact string match against the allowed set; no CIDR."""
        if not partner.ip_check_active:
            return
        if client_ip in partner.allowed_ips:
            return
        if partner.logging_enabled:
            logger.warning(
                "Unauthorized postback attempt from IP: %s for partner: %s",
                client_ip,
                partner.id,
            )
        raise IpNotAllowedError()

    def build_payload(self, partner: PartnerConfig, request: InboundRequest) -> QueuePayload:
        """Run field extraction and snapshot the request."""
        fields = extract_fields(partner, request.query, request.body, self.partner_id_key)
        return QueuePayload(
            partner_id=partner.id,
            timestamp=format_timestamp(datetime.utcnow()),
            click_id=fields.click_id,
            url=request.url,
            client_ip=request.client_ip,
            user_agent=request.user_agent,
            method=request.method.upper(),
            sum=fields.sum,
            sum_mapping=fields.mapped_sum,
            extra_params=fields.extra_params,
        )


# Global gate instance
ingestion_gate = IngestionGate()
