"""Tests for membership plans, quotes and scheduled plan changes."""
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from app.errors import UnknownPlan
from app.services import memberships


@pytest.mark.asyncio
async def test_plans_are_listed_in_display_order(test_db, plans):
    listed = await memberships.list_plans(test_db)
    assert [p.plan_id for p in listed] == ["free", "creator", "pro"]


@pytest.mark.asyncio
async def test_quote_uses_the_current_subscription(test_db, user, plans, subscribe):
    now = datetime.utcnow()
    await subscribe(user.uuid, "creator", days_left=15, now=now)

    quote = await memberships.quote_for_user(test_db, user.uuid, "pro", "monthly", now)

    assert quote.current_plan_id == "creator"
    assert quote.credit_cents == 1000
    assert quote.upgrade_cost_cents == 4000


@pytest.mark.asyncio
async def test_quote_without_subscription_is_full_price(test_db, user, plans):
    quote = await memberships.quote_for_user(test_db, user.uuid, "pro", "yearly")

    assert quote.current_plan_id is None
    assert quote.upgrade_cost_cents == 50000


@pytest.mark.asyncio
async def test_quote_for_unknown_plan(test_db, user, plans):
    with pytest.raises(UnknownPlan):
        await memberships.quote_for_user(test_db, user.uuid, "platinum", "monthly")


@pytest.mark.asyncio
async def test_activation_starts_a_fresh_period(test_db, user, plans, subscribe):
    user_id = user.uuid
    await subscribe(user_id, "creator", days_left=3)
    now = datetime(2026, 5, 1, 9, 0, 0)

    subscription = await memberships.activate_membership(test_db, user_id, "pro", "yearly", "tx-1", now)
    await test_db.commit()

    assert subscription.plan_id == "pro"
    assert subscription.current_period_start == now
    assert subscription.current_period_end == now + timedelta(days=365)
    assert subscription.transaction_id == "tx-1"


@pytest.mark.asyncio
async def test_downgrade_waits_for_renewal(test_db, user, plans, subscribe):
    user_id = user.uuid
    await subscribe(user_id, "pro", days_left=10)

    subscription = await memberships.schedule_downgrade(test_db, user_id, "creator")
    await test_db.commit()

    assert subscription.plan_id == "pro"
    assert subscription.scheduled_plan_id == "creator"

    assert await memberships.apply_due_plan_changes(test_db) == 0
    applied = await memberships.apply_due_plan_changes(test_db, datetime.utcnow() + timedelta(days=11))
    await test_db.commit()

    assert applied == 1
    current = await memberships.get_active_subscription(test_db, user_id)
    assert current.plan_id == "creator"
    assert current.scheduled_plan_id is None


@pytest.mark.asyncio
async def test_downgrade_to_a_pricier_plan_is_refused(test_db, user, plans, subscribe):
    await subscribe(user.uuid, "creator", days_left=10)

    with pytest.raises(HTTPException) as exc:
        await memberships.schedule_downgrade(test_db, user.uuid, "pro")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_downgrade_needs_a_subscription(test_db, user, plans):
    with pytest.raises(HTTPException) as exc:
        await memberships.schedule_downgrade(test_db, user.uuid, "free")
    assert exc.value.status_code == 400
