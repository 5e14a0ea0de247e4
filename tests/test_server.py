import sqlite3
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from settlement.models import Blockchain, RequestKind, ReserveCheck
from settlement.server import create_app


@pytest_asyncio.fixture
async def client(manager):
    transport = httpx.ASGITransport(app=create_app(manager))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _withdrawal(store, **overrides):
    fields = dict(user_id=1, to="SoLDest", blockchain="Solana", currency="USDC", amount=Decimal("50"))
    fields.update(overrides)
    return await store.create_request(RequestKind.WITHDRAWAL, **fields)


@pytest.mark.asyncio
async def test_health_lists_routes(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert "Solana:USDC" in response.json()["routes"]


@pytest.mark.asyncio
async def test_process_withdrawal_then_conflict(client, store):
    request = await _withdrawal(store)

    first = await client.post(f"/withdrawals/{request.id}/process")
    assert first.status_code == 200
    assert first.json()["status"] == "completed"

    second = await client.post(f"/withdrawals/{request.id}/process")
    assert second.status_code == 409
    assert second.json()["error"] == "already_processed"
    assert second.json()["retryable"] is False


@pytest.mark.asyncio
async def test_errors_map_to_status_codes(client, store, adapters):
    missing = await _withdrawal(store, to="")
    adapters[(Blockchain.SOLANA, "SOL")].reserve = ReserveCheck(False, "insufficient hot wallet balance")
    constrained = await _withdrawal(store, currency="SOL", amount=Decimal("300"))

    not_found = await client.post("/withdrawals/999/process")
    assert not_found.status_code == 404
    assert not_found.json()["error"] == "not_found"

    no_recipient = await client.post(f"/withdrawals/{missing.id}/process")
    assert no_recipient.status_code == 422
    assert no_recipient.json()["error"] == "missing_recipient"

    reserve = await client.post(f"/withdrawals/{constrained.id}/process")
    assert reserve.status_code == 503
    assert reserve.json() == {
        "error": "reserve_insufficient",
        "detail": "insufficient hot wallet balance",
        "retryable": True,
    }


@pytest.mark.asyncio
async def test_payout_credit_visible_in_balance(client, store):
    payout = await store.create_request(
        RequestKind.PAYOUT, user_id=42, to="TDest", currency="USDT", amount=Decimal("10")
    )

    response = await client.post(f"/payouts/{payout.id}/process")
    assert response.status_code == 200

    balance = await client.get("/balances/42/USDT")
    assert balance.json()["balance"] == "10"


@pytest.mark.asyncio
async def test_list_get_and_reject(client, store):
    first = await _withdrawal(store)
    await _withdrawal(store, to="SoLOther")

    listing = await client.get("/withdrawals", params={"status": "pending", "page_size": 1})
    body = listing.json()
    assert body["total"] == 2
    assert body["total_pages"] == 2
    assert len(body["data"]) == 1

    rejected = await client.post(f"/withdrawals/{first.id}/reject", json={"reason": "kyc"})
    assert rejected.json()["status"] == "failed"

    fetched = await client.get(f"/withdrawals/{first.id}")
    assert fetched.json()["failure_reason"] == "kyc"

    bad_filter = await client.get("/withdrawals", params={"status": "approved"})
    assert bad_filter.status_code == 400


@pytest.mark.asyncio
async def test_intents_endpoint_filters_by_state(client, store):
    request = await _withdrawal(store)
    await client.post(f"/withdrawals/{request.id}/process")

    confirmed = await client.get("/intents", params={"state": "confirmed"})
    assert [intent["request_id"] for intent in confirmed.json()] == [request.id]

    ambiguous = await client.get("/intents", params={"state": "ambiguous"})
    assert ambiguous.json() == []


@pytest.mark.asyncio
async def test_unsaved_status_returns_typed_conflict(client, store, monkeypatch):
    request = await _withdrawal(store, blockchain="Tron", currency="USDT")

    async def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "mark_completed", broken)

    response = await client.post(f"/withdrawals/{request.id}/process")

    assert response.status_code == 409
    assert response.json()["error"] == "transfer_ambiguous"
    assert response.json()["retryable"] is False
