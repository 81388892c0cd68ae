"""Tests for the ingestion gate."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from postback_tracker.db.models import PostbackQueueEntry, QueueStatus
from postback_tracker.errors import (
    IpNotAllowedError,
    MissingPartnerIdError,
    PartnerNotFoundError,
    StorageError,
)
from postback_tracker.ingest.gate import InboundRequest, IngestionGate
from postback_tracker.queue.payload import QueuePayload
from postback_tracker.queue.postback_queue import PostbackQueue


def inbound(query=None, body=None, client_ip="10.0.0.1") -> InboundRequest:
    return InboundRequest(
        method="get",
        url="http://tracker.local/postback?pid=acme",
        client_ip=client_ip,
        user_agent="pytest",
        query=query or {},
        body=body or {},
    )


async def queue_size(db) -> int:
    result = await db.execute(select(func.count(PostbackQueueEntry.id)))
    return result.scalar()


@pytest.fixture
def gate():
    return IngestionGate(partner_id_key="pid")


class TestIngest:
    """Test validation and enqueueing."""

    async def test_missing_pid(self, gate, db):
        with pytest.raises(MissingPartnerIdError) as exc_info:
            await gate.ingest(db, inbound({"clickid": "xyz"}))
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Partner ID is required"

    async def test_empty_pid(self, gate, db):
        with pytest.raises(MissingPartnerIdError):
            await gate.ingest(db, inbound({"pid": "  "}))

    async def test_unknown_partner(self, gate, db):
        with pytest.raises(PartnerNotFoundError) as exc_info:
            await gate.ingest(db, inbound({"pid": "nobody"}))
        assert exc_info.value.status_code == 404
        assert await queue_size(db) == 0

    async def test_enqueues_payload(self, gate, db, make_partner):
        await make_partner("acme")

        queue_id = await gate.ingest(db, inbound({"pid": "acme", "clickid": "xyz", "sum": "5", "geo": "US"}))

        entry = await db.get(PostbackQueueEntry, queue_id)
        assert entry.status == QueueStatus.PENDING
        assert entry.retry_count == 0
        assert entry.partner_id == "acme"

        payload = QueuePayload.model_validate(entry.data)
        assert payload.click_id == "xyz"
        assert payload.sum == 5.0
        assert payload.method == "GET"
        assert payload.client_ip == "10.0.0.1"
        assert payload.extra_params == {"geo": "US"}

    async def test_pid_from_body(self, gate, db, make_partner):
        await make_partner("acme")

        queue_id = await gate.ingest(db, inbound(body={"pid": "acme", "clickid": "b"}))

        assert queue_id > 0

    async def test_empty_query_pid_does_not_fall_back_to_body(self, gate, db, make_partner):
        await make_partner("acme")

        with pytest.raises(MissingPartnerIdError):
            await gate.ingest(db, inbound({"pid": ""}, body={"pid": "acme"}))
        assert await queue_size(db) == 0

    async def test_ip_whitelist_rejects_unknown_ip(self, gate, db, make_partner):
        await make_partner("acme", ip_whitelist_enabled=True, allowed_ips=["1.2.3.4"])

        with pytest.raises(IpNotAllowedError) as exc_info:
            await gate.ingest(db, inbound({"pid": "acme"}, client_ip="5.6.7.8"))

        assert exc_info.value.status_code == 403
        assert await queue_size(db) == 0

    async def test_ip_whitelist_accepts_listed_ip(self, gate, db, make_partner):
        await make_partner("acme", ip_whitelist_enabled=True, allowed_ips=["1.2.3.4"])

        queue_id = await gate.ingest(db, inbound({"pid": "acme"}, client_ip="1.2.3.4"))

        assert queue_id > 0

    async def test_whitelist_disabled_accepts_any_ip(self, gate, db, make_partner):
        await make_partner("acme", ip_whitelist_enabled=False, allowed_ips=["1.2.3.4"])

        queue_id = await gate.ingest(db, inbound({"pid": "acme"}, client_ip="9.9.9.9"))

        assert queue_id > 0

    async def test_empty_whitelist_accepts_any_ip(self, gate, db, make_partner):
        await make_partner("acme", ip_whitelist_enabled=True, allowed_ips=[])

        queue_id = await gate.ingest(db, inbound({"pid": "acme"}, client_ip="9.9.9.9"))

        assert queue_id > 0

    async def test_lookup_failure_is_storage_error(self, db):
        registry = AsyncMock()
        registry.get.side_effect = OperationalError("SELECT", {}, Exception("down"))
        gate = IngestionGate(registry=registry, partner_id_key="pid")

        with pytest.raises(StorageError) as exc_info:
            await gate.ingest(db, inbound({"pid": "acme"}))
        assert exc_info.value.message == "Database error"

    async def test_enqueue_failure_is_storage_error(self, db, make_partner):
        await make_partner("acme")
        queue = PostbackQueue()
        queue.enqueue = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("down")))
        gate = IngestionGate(queue=queue, partner_id_key="pid")

        with pytest.raises(StorageError) as exc_info:
            await gate.ingest(db, inbound({"pid": "acme"}))
        assert exc_info.value.message == "Failed to queue postback"
        assert exc_info.value.status_code == 500
