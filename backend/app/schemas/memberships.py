"""Schemas for membership plan, quote and downgrade endpoints."""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field

from app.services.money import cents_to_float


class MembershipPlanResponse(BaseModel):
    plan_id: str
    name: str
    monthly_price: float
    yearly_price: float
    display_order: int

    @classmethod
    def from_plan(cls, plan) -> "MembershipPlanResponse":
        return cls(
            plan_id=plan.plan_id,
            name=plan.name,
            monthly_price=cents_to_float(plan.monthly_price_cents),
            yearly_price=cents_to_float(plan.yearly_price_cents),
            display_order=plan.display_order,
        )


class UpgradeQuoteRequest(BaseModel):
    target_plan_id: str = Field(..., description="Plan the subscriber wants to move to")
    billing_cycle: Literal["monthly", "yearly"] = Field("monthly", description="Billing cycle of the target plan")


class UpgradeQuoteResponse(BaseModel):
    """Read-only price preview. Checkout recomputes it at confirmation."""

    target_plan_id: str
    current_plan_id: Optional[str]
    billing_cycle: str
    upgrade_cost: float
    credit: float
    raw_target_price: float
    days_remaining: int
    days_in_cycle: int
    is_downgrade: bool
    renewal_date: Optional[datetime]

    @classmethod
    def from_quote(cls, quote) -> "UpgradeQuoteResponse":
        return cls(
            target_plan_id=quote.target_plan_id,
            current_plan_id=quote.current_plan_id,
            billing_cycle=quote.billing_cycle,
            upgrade_cost=float(quote.upgrade_cost),
            credit=float(quote.credit),
            raw_target_price=cents_to_float(quote.raw_target_price_cents),
            days_remaining=quote.days_remaining,
            days_in_cycle=quote.days_in_cycle,
            is_downgrade=quote.is_downgrade,
            renewal_date=quote.renewal_date,
        )


class DowngradeRequest(BaseModel):
    target_plan_id: str


class SubscriptionResponse(BaseModel):
    uuid: str
    plan_id: str
    billing_cycle: str
    status: str
    scheduled_plan_id: Optional[str]
    current_period_start: datetime
    current_period_end: datetime

    class Config:
        from_attributes = True
