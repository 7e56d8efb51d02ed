"""Tests for wallet, creator earnings and payout review endpoints."""
import pytest

from app.models.user import User
from app.services import ledger


@pytest.fixture
async def accountant(test_db):
    user = User(name="Test Accountant", email="accountant@example.com", user_role="accountant", status="active")
    test_db.add(user)
    await test_db.commit()
    return user


@pytest.fixture
async def bank_account_id(client, creator, auth_headers):
    response = await client.post(
        "/api/creator/payout-accounts",
        json={
            "account_type": "bank",
            "account_name": "Main account",
            "details": {"bank_name": "First Bank", "account_number": "0012345"},
            "is_default": True,
        },
        headers=auth_headers(creator),
    )
    assert response.status_code == 201
    return response.json()["uuid"]


# ── Wallet ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_wallet_without_activity_is_empty(client, user, auth_headers):
    response = await client.get("/api/users/me/wallet", headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()["available_balance"] == 0.0
    assert response.json()["held_balance"] == 0.0


@pytest.mark.asyncio
async def test_wallet_requires_login(client):
    response = await client.get("/api/users/me/wallet")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_wallet_history_is_paginated(client, test_db, user, auth_headers):
    for amount in (1000, 2000, 3000):
        await ledger.credit(test_db, user.uuid, amount, "Top-up")
    await test_db.commit()

    first = await client.get("/api/users/me/wallet/history?page=1&page_size=2", headers=auth_headers(user))
    second = await client.get("/api/users/me/wallet/history?page=2&page_size=2", headers=auth_headers(user))

    assert first.status_code == 200
    assert first.json()["total"] == 3
    assert first.json()["total_pages"] == 2
    assert len(first.json()["entries"]) == 2
    assert len(second.json()["entries"]) == 1


# ── Creator ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_creator_balance_is_creator_only(client, user, auth_headers):
    response = await client.get("/api/creator/balance", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_creator_balance(client, creator, fund_wallet, auth_headers):
    await fund_wallet(creator.uuid, 7500)

    response = await client.get("/api/creator/balance", headers=auth_headers(creator))

    assert response.status_code == 200
    data = response.json()
    assert data["balance"]["available_balance"] == 75.0
    assert data["can_withdraw"] is True
    assert data["minimum_payout"] == 50.0


@pytest.mark.asyncio
async def test_payout_request_holds_funds(client, creator, fund_wallet, bank_account_id, auth_headers):
    await fund_wallet(creator.uuid, 10000)
    headers = auth_headers(creator)

    response = await client.post(
        "/api/creator/payouts",
        json={"amount": "75.00", "payout_method": "bank", "payout_account_id": bank_account_id},
        headers=headers,
    )

    assert response.status_code == 201
    assert response.json()["status"] == "awaiting_admin"
    balance = (await client.get("/api/creator/balance", headers=headers)).json()
    assert balance["balance"]["available_balance"] == 25.0
    assert balance["balance"]["held_balance"] == 75.0
    assert len(balance["pending_payouts"]) == 1


@pytest.mark.asyncio
async def test_payout_over_balance_is_refused(client, creator, fund_wallet, bank_account_id, auth_headers):
    await fund_wallet(creator.uuid, 6000)
    headers = auth_headers(creator)

    response = await client.post(
        "/api/creator/payouts",
        json={"amount": "75.00", "payout_method": "bank", "payout_account_id": bank_account_id},
        headers=headers,
    )
    assert response.status_code == 402


# ── Admin ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_payout_review_flow(client, creator, admin, fund_wallet, bank_account_id, auth_headers):
    await fund_wallet(creator.uuid, 10000)
    creator_headers = auth_headers(creator)
    admin_headers = auth_headers(admin)

    created = await client.post(
        "/api/creator/payouts",
        json={"amount": "60.00", "payout_method": "bank", "payout_account_id": bank_account_id},
        headers=creator_headers,
    )
    payout_id = created.json()["uuid"]

    listed = await client.get("/api/admin/payouts?status=awaiting_admin", headers=admin_headers)
    assert listed.json()["total"] == 1

    approved = await client.post(f"/api/admin/payouts/{payout_id}/approve", headers=admin_headers)
    assert approved.json()["status"] == "approved"

    rejected = await client.post(
        f"/api/admin/payouts/{payout_id}/reject", json={"reason": "Changed my mind"}, headers=admin_headers
    )
    assert rejected.status_code == 409

    processing = await client.post(
        f"/api/admin/payouts/{payout_id}/mark-processing",
        json={"payment_reference": "WIRE-77"},
        headers=admin_headers,
    )
    assert processing.json()["status"] == "payment_processing"
    assert processing.json()["payment_reference"] == "WIRE-77"


@pytest.mark.asyncio
async def test_accountant_reviews_but_cannot_settle(client, creator, accountant, fund_wallet, bank_account_id, auth_headers):
    await fund_wallet(creator.uuid, 10000)
    created = await client.post(
        "/api/creator/payouts",
        json={"amount": "60.00", "payout_method": "bank", "payout_account_id": bank_account_id},
        headers=auth_headers(creator),
    )
    payout_id = created.json()["uuid"]
    headers = auth_headers(accountant)

    rejected = await client.post(
        f"/api/admin/payouts/{payout_id}/reject", json={"reason": "Unverified account"}, headers=headers
    )
    assert rejected.status_code == 200
    assert rejected.json()["rejection_reason"] == "Unverified account"

    assert (await client.post("/api/admin/earnings/settle", headers=headers)).status_code == 403
    assert (await client.post("/api/admin/payouts/finalize-due", headers=headers)).status_code == 403


@pytest.mark.asyncio
async def test_creators_cannot_review_payouts(client, creator, auth_headers):
    response = await client.get("/api/admin/payouts", headers=auth_headers(creator))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_settlement_preview_and_run(client, admin, auth_headers):
    headers = auth_headers(admin)

    preview = await client.get("/api/admin/earnings/settlement-preview", headers=headers)
    assert preview.status_code == 200
    assert preview.json() == {"creators": [], "total_pending": 0.0}

    run = await client.post("/api/admin/earnings/settle", headers=headers)
    assert run.status_code == 200
    assert run.json()["status"] == "completed"
    assert run.json()["creators_processed"] == 0
