"""Membership plans, upgrade quotes and scheduled downgrades."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_active_user
from app.database import get_db
from app.models.user import User
from app.schemas.memberships import (
    DowngradeRequest, MembershipPlanResponse, SubscriptionResponse,
    UpgradeQuoteRequest, UpgradeQuoteResponse
)
from app.services import memberships

router = APIRouter()


@router.get("/api/memberships/plans", response_model=List[MembershipPlanResponse])
async def list_membership_plans(db: AsyncSession = Depends(get_db)):
    """List active membership plans, cheapest first."""
    plans = await memberships.list_plans(db)
    return [MembershipPlanResponse.from_plan(p) for p in plans]


@router.get("/api/memberships/me", response_model=SubscriptionResponse)
async def get_my_membership(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    subscription = await memberships.get_active_subscription(db, current_user.uuid)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active membership"
        )
    return subscription


@router.post("/api/memberships/quote", response_model=UpgradeQuoteResponse)
async def quote_membership_upgrade(
    request_data: UpgradeQuoteRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Preview what an upgrade would cost right now.

    - Unused days on the current plan are credited against the target price
    - Nothing is stored; checkout recomputes the price before settling
    """
    quote = await memberships.quote_for_user(
        db, current_user.uuid, request_data.target_plan_id, request_data.billing_cycle
    )
    return UpgradeQuoteResponse.from_quote(quote)


@router.post("/api/memberships/downgrade", response_model=SubscriptionResponse)
async def schedule_membership_downgrade(
    request_data: DowngradeRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Switch to a cheaper plan at the end of the current period. Free."""
    subscription = await memberships.schedule_downgrade(db, current_user.uuid, request_data.target_plan_id)
    await db.commit()
    return subscription
