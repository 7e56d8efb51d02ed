"""Membership plan lookups, upgrade quotes and subscription activation."""
import logging
from datetime import datetime, timedelta

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import UnknownPlan
from app.models.membership_plan import MembershipPlan
from app.models.subscription import Subscription
from app.services.proration import MembershipUpgradeQuote, quote_upgrade, total_days_in_cycle

logger = logging.getLogger(__name__)


async def get_plan(db: AsyncSession, plan_id: str) -> MembershipPlan | None:
    result = await db.execute(
        select(MembershipPlan).where(MembershipPlan.plan_id == plan_id, MembershipPlan.active.is_(True))
    )
    return result.scalar_one_or_none()


async def list_plans(db: AsyncSession) -> list[MembershipPlan]:
    result = await db.execute(
        select(MembershipPlan)
        .where(MembershipPlan.active.is_(True))
        .order_by(MembershipPlan.display_order)
    )
    return list(result.scalars().all())


async def get_active_subscription(db: AsyncSession, user_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == "active")
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def quote_for_user(
    db: AsyncSession,
    user_id: str,
    target_plan_id: str,
    billing_cycle: str,
    now: datetime | None = None,
) -> MembershipUpgradeQuote:
    """Build a fresh upgrade quote from the user's current subscription."""
    now = now or datetime.utcnow()
    target = await get_plan(db, target_plan_id)
    subscription = await get_active_subscription(db, user_id)

    current = None
    renewal_date = None
    if subscription is not None:
        current = await get_plan(db, subscription.plan_id)
        renewal_date = subscription.current_period_end

    return quote_upgrade(
        current_plan=current,
        target_plan=target,
        billing_cycle=billing_cycle,
        renewal_date=renewal_date,
        now=now,
        target_plan_id=target_plan_id,
    )


async def activate_membership(
    db: AsyncSession,
    user_id: str,
    plan_id: str,
    billing_cycle: str,
    transaction_id: str,
    now: datetime | None = None,
) -> Subscription:
    """Grant a paid plan. A new full period starts now; any unused time on
    the previous plan was already credited in the upgrade price."""
    now = now or datetime.utcnow()
    period_end = now + timedelta(days=total_days_in_cycle(billing_cycle))

    subscription = await get_active_subscription(db, user_id)
    if subscription is None:
        subscription = Subscription(user_id=user_id, status="active")
        db.add(subscription)

    subscription.plan_id = plan_id
    subscription.billing_cycle = billing_cycle
    subscription.scheduled_plan_id = None
    subscription.transaction_id = transaction_id
    subscription.current_period_start = now
    subscription.current_period_end = period_end
    await db.flush()

    logger.info(f"Activated {plan_id} ({billing_cycle}) for user {user_id} until {period_end:%Y-%m-%d}")
    return subscription


async def schedule_downgrade(db: AsyncSession, user_id: str, target_plan_id: str) -> Subscription:
    """Record a cheaper plan to take over when the current period ends."""
    target = await get_plan(db, target_plan_id)
    if target is None:
        raise UnknownPlan(target_plan_id)

    subscription = await get_active_subscription(db, user_id)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No active subscription to downgrade"
        )

    current = await get_plan(db, subscription.plan_id)
    cycle = subscription.billing_cycle
    if current is not None and target.period_price_cents(cycle) >= current.period_price_cents(cycle):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Target plan is not a downgrade; use checkout to upgrade"
        )

    subscription.scheduled_plan_id = target.plan_id
    await db.flush()
    logger.info(
        f"Scheduled downgrade {subscription.plan_id} -> {target.plan_id} for user {user_id} "
        f"at {subscription.current_period_end:%Y-%m-%d}"
    )
    return subscription


async def apply_due_plan_changes(db: AsyncSession, now: datetime | None = None) -> int:
    """Switch subscriptions whose period has ended to their scheduled plan."""
    now = now or datetime.utcnow()
    result = await db.execute(
        select(Subscription).where(
            Subscription.status == "active",
            Subscription.scheduled_plan_id.is_not(None),
            Subscription.current_period_end <= now,
        )
    )
    changed = 0
    for subscription in result.scalars().all():
        logger.info(
            f"Applying scheduled plan change {subscription.plan_id} -> {subscription.scheduled_plan_id} "
            f"for user {subscription.user_id}"
        )
        subscription.plan_id = subscription.scheduled_plan_id
        subscription.scheduled_plan_id = None
        changed += 1
    await db.flush()
    return changed
