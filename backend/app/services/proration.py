"""Prorated membership upgrade pricing.

Pricing formula
---------------
1. ``days_remaining = ceil((renewal_date - now) / 1 day)`` clamped to
   ``[0, days_in_cycle]``. A renewal date in the past yields 0.
2. ``credit = current_price * days_remaining / days_in_cycle`` rounded half
   up to the cent.
3. ``upgrade_cost = max(0, target_price - credit)``.

Switching to the plan you already have is charged as a fresh subscribe (full
price, no credit). Moving to a cheaper plan costs nothing now and takes
effect at the next renewal.

Everything here is pure: plans come in, a quote goes out.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Protocol

from app.errors import UnknownPlan, UnsupportedBillingCycle
from app.models.membership_plan import BILLING_CYCLE_DAYS
from app.services.money import from_cents

SECONDS_PER_DAY = 86400


class PricedPlan(Protocol):
    plan_id: str

    def period_price_cents(self, billing_cycle: str) -> int: ...


@dataclass(frozen=True)
class MembershipUpgradeQuote:
    """Ephemeral quote; never persisted, recomputed at confirmation time."""

    target_plan_id: str
    current_plan_id: str | None
    billing_cycle: str
    days_remaining: int
    days_in_cycle: int
    credit_cents: int
    raw_target_price_cents: int
    upgrade_cost_cents: int
    is_downgrade: bool = False
    renewal_date: datetime | None = None

    @property
    def upgrade_cost(self) -> Decimal:
        return from_cents(self.upgrade_cost_cents)

    @property
    def credit(self) -> Decimal:
        return from_cents(self.credit_cents)


def total_days_in_cycle(billing_cycle: str) -> int:
    try:
        return BILLING_CYCLE_DAYS[billing_cycle]
    except KeyError:
        raise UnsupportedBillingCycle(billing_cycle)


def days_remaining(renewal_date: datetime | None, now: datetime, days_in_cycle: int) -> int:
    """Whole days left in the current period, rounded up and clamped."""
    if renewal_date is None:
        return 0
    seconds = (renewal_date - now).total_seconds()
    days = math.ceil(seconds / SECONDS_PER_DAY)
    return max(0, min(days, days_in_cycle))


def prorated_credit_cents(current_price_cents: int, remaining: int, days_in_cycle: int) -> int:
    if remaining <= 0 or current_price_cents <= 0:
        return 0
    credit = Decimal(current_price_cents) * Decimal(remaining) / Decimal(days_in_cycle)
    return int(credit.to_integral_value(rounding=ROUND_HALF_UP))


def quote_upgrade(
    current_plan: PricedPlan | None,
    target_plan: PricedPlan | None,
    billing_cycle: str,
    renewal_date: datetime | None,
    now: datetime,
    target_plan_id: str | None = None,
) -> MembershipUpgradeQuote:
    """Price a mid-cycle move from ``current_plan`` to ``target_plan``.

    Parameters
    ----------
    current_plan:
        The subscriber's active plan, or ``None`` for a fresh subscribe.
    target_plan:
        The plan being bought. ``None`` means the id did not resolve.
    renewal_date:
        End of the subscriber's current billing period.
    target_plan_id:
        Only used for the error message when ``target_plan`` is ``None``.

    Raises
    ------
    UnknownPlan, UnsupportedBillingCycle
    """
    if target_plan is None:
        raise UnknownPlan(target_plan_id or "")
    cycle_days = total_days_in_cycle(billing_cycle)

    target_price = target_plan.period_price_cents(billing_cycle)
    current_plan_id = current_plan.plan_id if current_plan is not None else None

    # Fresh subscribe, or re-buying the same plan: full price, no credit
    if current_plan is None or current_plan.plan_id == target_plan.plan_id:
        return MembershipUpgradeQuote(
            target_plan_id=target_plan.plan_id,
            current_plan_id=current_plan_id,
            billing_cycle=billing_cycle,
            days_remaining=days_remaining(renewal_date, now, cycle_days) if current_plan else 0,
            days_in_cycle=cycle_days,
            credit_cents=0,
            raw_target_price_cents=target_price,
            upgrade_cost_cents=target_price,
            renewal_date=renewal_date,
        )

    current_price = current_plan.period_price_cents(billing_cycle)
    remaining = days_remaining(renewal_date, now, cycle_days)

    if target_price < current_price:
        return MembershipUpgradeQuote(
            target_plan_id=target_plan.plan_id,
            current_plan_id=current_plan_id,
            billing_cycle=billing_cycle,
            days_remaining=remaining,
            days_in_cycle=cycle_days,
            credit_cents=0,
            raw_target_price_cents=target_price,
            upgrade_cost_cents=0,
            is_downgrade=True,
            renewal_date=renewal_date,
        )

    credit = prorated_credit_cents(current_price, remaining, cycle_days)
    return MembershipUpgradeQuote(
        target_plan_id=target_plan.plan_id,
        current_plan_id=current_plan_id,
        billing_cycle=billing_cycle,
        days_remaining=remaining,
        days_in_cycle=cycle_days,
        credit_cents=credit,
        raw_target_price_cents=target_price,
        upgrade_cost_cents=max(0, target_price - credit),
        renewal_date=renewal_date,
    )
