"""Tests for the HTTP surface: auth, trigger, sales check, accounts, SSE."""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from conftest import add_accounts, make_account, sale_row
from marketplace_sync.config.settings import settings
from marketplace_sync.db.base import to_storage, utcnow
from marketplace_sync.server import routes
from marketplace_sync.services.account_service import AccountService
from marketplace_sync.services.persister import SalePersister
from marketplace_sync.services.progress import ProgressReporter
from marketplace_sync.services.sync_orchestrator import AccountResult, SyncReport

API_KEY = "test-key"
HEADERS = {"X-API-Key": API_KEY, "X-User-Id": "owner-1"}


class FakeOrchestrator:
    def __init__(self):
        self.requests = []

    async def run(self, request):
        self.requests.append(request)
        report = SyncReport(request=request)
        report.accounts.append(AccountResult(account_id="acc-1", nickname="LOJA_TESTE", saved=3, fetched=3))
        return report


@pytest.fixture
def orchestrator():
    return FakeOrchestrator()


@pytest.fixture
def reporter():
    return ProgressReporter()


@pytest_asyncio.fixture
async def client(monkeypatch, session_factory, orchestrator, reporter):
    monkeypatch.setattr(settings, "dashboard_api_key", API_KEY)
    monkeypatch.setattr(routes, "orchestrators", {"meli": orchestrator})
    monkeypatch.setattr(routes, "progress_reporter", reporter)
    monkeypatch.setattr(routes, "session_factory", session_factory)
    monkeypatch.setattr(routes, "account_service", AccountService(session_factory, {}))
    monkeypatch.setattr(routes, "continuation_queue", None)

    app = FastAPI()
    app.include_router(routes.router)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http


# ==============================================================================
# AUTH
# ==============================================================================

@pytest.mark.asyncio
async def test_wrong_api_key_is_rejected(client):
    response = await client.post("/api/meli/sync", headers={**HEADERS, "X-API-Key": "nope"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unconfigured_api_key_is_service_unavailable(client, monkeypatch):
    monkeypatch.setattr(settings, "dashboard_api_key", None)

    response = await client.post("/api/meli/sync", headers=HEADERS)

    assert response.status_code == 503


# ==============================================================================
# SYNC TRIGGER
# ==============================================================================

@pytest.mark.asyncio
async def test_trigger_sync_returns_report(client, orchestrator):
    response = await client.post(
        "/api/meli/sync",
        headers=HEADERS,
        json={"accountIds": ["acc-1"], "fullSync": True, "quickMode": False},
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body) == {
        "syncedAt", "accounts", "errors", "totals", "hasMoreToSync", "quickMode", "autoSyncTriggered",
    }
    assert body["totals"] == {"expected": 0, "fetched": 3, "saved": 3}
    assert body["quickMode"] is False
    assert body["accounts"][0]["nickname"] == "LOJA_TESTE"

    (request,) = orchestrator.requests
    assert request.owner_id == "owner-1"
    assert request.account_ids == ["acc-1"]
    assert request.full_sync is True


@pytest.mark.asyncio
async def test_trigger_sync_without_body_defaults_to_quick_mode(client, orchestrator):
    response = await client.post("/api/meli/sync", headers=HEADERS)

    assert response.status_code == 200
    assert orchestrator.requests[0].quick_mode is True
    assert orchestrator.requests[0].account_ids is None


@pytest.mark.asyncio
async def test_unknown_and_unconfigured_platforms(client):
    assert (await client.post("/api/amazon/sync", headers=HEADERS)).status_code == 404
    assert (await client.post("/api/shopee/sync", headers=HEADERS)).status_code == 503


# ==============================================================================
# SALES CHECK
# ==============================================================================

@pytest.mark.asyncio
async def test_sales_check_counts_recent_and_total(client, session_factory):
    now = utcnow()
    await SalePersister(session_factory).save("meli", [
        sale_row("1", sale_date=now - timedelta(days=1)),
        sale_row("2", sale_date=now - timedelta(days=30)),
        sale_row("3", sale_date=now - timedelta(days=2), owner_id="owner-2"),
    ])

    response = await client.get("/api/meli/sales/check", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["totals"] == {"new": 1, "total": 2}
    assert set(body["period"]) == {"from", "to"}


# ==============================================================================
# ACCOUNTS
# ==============================================================================

@pytest.mark.asyncio
async def test_clear_invalid_mark(client, session_factory):
    await add_accounts(session_factory, make_account(refresh_token_invalid_until=to_storage(utcnow())))

    response = await client.post("/api/accounts/meli/acc-1/clear-invalid", headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"success": True, "accountId": "acc-1"}


@pytest.mark.asyncio
async def test_clear_invalid_mark_of_another_owner_is_not_found(client, session_factory):
    await add_accounts(session_factory, make_account(owner_id="owner-2"))

    response = await client.post("/api/accounts/meli/acc-1/clear-invalid", headers=HEADERS)

    assert response.status_code == 404


# ==============================================================================
# PROGRESS STREAM
# ==============================================================================

@pytest.mark.asyncio
async def test_progress_stream_delivers_events_until_closed(client, reporter):
    async def publish_then_close():
        while reporter.subscriber_count("owner-1") == 0:
            await asyncio.sleep(0.01)
        channel = reporter.channel("owner-1")
        channel.progress("Sincronizando conta", current=1, total=1)
        channel.publish("sync_complete", "Pronto", has_more_to_sync=False)
        channel.detach_all()

    publisher = asyncio.create_task(publish_then_close())
    response = await client.get("/api/sync/progress", params={"apiKey": API_KEY, "userId": "owner-1"})
    await publisher

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = [line[len("data: "):] for line in response.text.splitlines() if line.startswith("data: ")]
    events = [json.loads(frame) for frame in frames]
    assert [event["type"] for event in events] == ["sync_progress", "sync_complete"]
    assert events[1]["hasMoreToSync"] is False


# ==============================================================================
# MONITORING
# ==============================================================================

@pytest.mark.asyncio
async def test_health_reports_platforms(client):
    body = (await client.get("/health")).json()

    assert body["status"] == "healthy"
    assert body["platforms"] == ["meli"]
    assert body["queue"] == "disabled"


@pytest.mark.asyncio
async def test_health_unhealthy_without_platforms(client, monkeypatch):
    monkeypatch.setattr(routes, "orchestrators", {})

    assert (await client.get("/health")).json()["status"] == "unhealthy"
