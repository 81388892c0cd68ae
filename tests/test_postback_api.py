"""API tests for /postback and the read-only monitoring endpoints."""

from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from postback_tracker.api.deps import get_database
from postback_tracker.db.models import DetailedStat, PostbackQueueEntry, QueueStatus, SummaryStat
from postback_tracker.main import app
from postback_tracker.queue.postback_queue import postback_queue


@pytest.fixture
async def client(session_factory):
    """HTTP client against the app, with the database swapped for the test one."""

    async def get_test_database():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_database] = get_test_database
    transport = httpx.ASGITransport(app=app, client=("10.0.0.1", 123))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()


async def all_entries(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(PostbackQueueEntry))
        return list(result.scalars().all())


class TestPostbackEndpoint:
    """Test GET/POST /postback."""

    async def test_missing_pid_returns_400(self, client):
        response = await client.get("/postback", params={"clickid": "xyz"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Partner ID is required"}

    async def test_unknown_partner_returns_404(self, client):
        response = await client.get("/postback", params={"pid": "nobody"})

        assert response.status_code == 404
        assert response.json()["message"] == "Partner not found"

    async def test_ip_not_allowed_returns_403_and_enqueues_nothing(
        self, client, make_partner, session_factory
    ):
        await make_partner("acme", ip_whitelist_enabled=True, allowed_ips=["1.2.3.4"])

        response = await client.get("/postback", params={"pid": "acme", "clickid": "xyz"})

        assert response.status_code == 403
        assert response.json()["message"] == "IP not allowed"
        assert await all_entries(session_factory) == []

    async def test_whitelisted_ip_accepted(self, client, make_partner):
        await make_partner("acme", ip_whitelist_enabled=True, allowed_ips=["10.0.0.1"])

        response = await client.get("/postback", params={"pid": "acme"})

        assert response.status_code == 200

    async def test_get_enqueues_and_returns_queue_id(self, client, make_partner, session_factory):
        await make_partner("acme")

        response = await client.get(
            "/postback", params={"pid": "acme", "clickid": "xyz", "sum": "5"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Postback received and queued for processing"

        entries = await all_entries(session_factory)
        assert len(entries) == 1
        assert entries[0].id == data["queue_id"]
        assert entries[0].status == QueueStatus.PENDING
        assert entries[0].data["click_id"] == "xyz"
        assert entries[0].data["client_ip"] == "10.0.0.1"
        assert "pid=acme" in entries[0].data["url"]

    async def test_post_form_body(self, client, make_partner, session_factory):
        await make_partner("acme")

        response = await client.post(
            "/postback?pid=acme", data={"cid": "form-click", "payout": "7.5", "offer": "9"}
        )

        assert response.status_code == 200
        entry = (await all_entries(session_factory))[0]
        assert entry.data["click_id"] == "form-click"
        assert entry.data["sum"] == 7.5
        assert entry.data["method"] == "POST"
        assert entry.data["extra_params"] == {"offer": "9"}

    async def test_post_json_body(self, client, make_partner, session_factory):
        await make_partner("acme")

        response = await client.post("/postback", json={"pid": "acme", "clickid": "j1", "sum": 3})

        assert response.status_code == 200
        entry = (await all_entries(session_factory))[0]
        assert entry.data["click_id"] == "j1"
        assert entry.data["sum"] == 3.0

    async def test_repeated_query_keys_become_list(self, client, make_partner, session_factory):
        await make_partner("acme")

        response = await client.get("/postback?pid=acme&clickid=a&clickid=b&tag=x&tag=y")

        assert response.status_code == 200
        entry = (await all_entries(session_factory))[0]
        assert entry.data["click_id"] == "a"
        assert entry.data["extra_params"] == {"tag": ["x", "y"]}

    async def test_enqueue_failure_returns_500(self, client, make_partner, monkeypatch):
        await make_partner("acme")
        monkeypatch.setattr(
            postback_queue,
            "enqueue",
            AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("down"))),
        )

        response = await client.get("/postback", params={"pid": "acme"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Failed to queue postback"}

    async def test_ingestion_has_no_side_effects(self, client, make_partner, session_factory):
        await make_partner("acme", telegram_enabled=True)

        await client.get("/postback", params={"pid": "acme", "clickid": "xyz"})

        async with session_factory() as session:
            assert (await session.execute(select(DetailedStat))).first() is None
            assert (await session.execute(select(SummaryStat))).first() is None


class TestMonitoringEndpoints:
    """Test /health, /api/queue/stats and /api/stats/{partner_id}."""

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_metrics_exposed(self, client, make_partner):
        await make_partner("acme")
        await client.get("/postback", params={"pid": "acme"})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "postbacks_received_total" in response.text

    async def test_queue_stats(self, client, make_partner):
        await make_partner("acme")
        await client.get("/postback", params={"pid": "acme", "clickid": "1"})
        await client.get("/postback", params={"pid": "acme", "clickid": "2"})

        response = await client.get("/api/queue/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["pending"] == 2
        assert data["completed"] == 0
        assert data["total"] == 2
        assert data["oldest_pending_age_seconds"] is not None

    async def test_partner_stats_after_processing(self, client, make_partner, processor):
        await make_partner("acme")
        await client.get("/postback", params={"pid": "acme", "clickid": "xyz", "sum": "5"})
        await processor.run_batch()

        response = await client.get("/api/stats/acme")

        assert response.status_code == 200
        data = response.json()
        assert data["summary"]["total_requests"] == 1
        assert data["summary"]["successful_redirects"] == 1
        assert data["recent"][0]["click_id"] == "xyz"

    async def test_partner_stats_without_activity(self, client, make_partner):
        await make_partner("acme")

        response = await client.get("/api/stats/acme")

        assert response.status_code == 200
        assert response.json()["summary"]["total_requests"] == 0
        assert response.json()["recent"] == []

    async def test_partner_stats_unknown_partner(self, client):
        response = await client.get("/api/stats/nobody")
        assert response.status_code == 404

    async def test_partner_stats_limit_bounds(self, client, make_partner):
        await make_partner("acme")

        response = await client.get("/api/stats/acme", params={"limit": 501})

        assert response.status_code == 422
