"""Creator earnings dashboard, payout accounts and payout requests."""
from typing import List

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import creator_required
from app.config import settings
from app.database import get_db
from app.models.earning import EarningsEvent
from app.models.user import User
from app.rate_limit import limiter
from app.schemas.balance import WalletBalanceResponse
from app.schemas.payouts import (
    CreatorBalanceResponse, EarningsEventResponse, PayoutAccountCreate, PayoutAccountResponse,
    PayoutRequestCreate, PayoutRequestResponse
)
from app.services import payouts
from app.services.money import cents_to_float

router = APIRouter()


@router.get("/api/creator/balance", response_model=CreatorBalanceResponse)
async def get_creator_balance(
    current_user: User = Depends(creator_required),
    db: AsyncSession = Depends(get_db)
):
    """
    Creator earnings dashboard.

    - Wallet buckets (available, held, pending)
    - Ten most recent earnings events
    - Payout requests that are still open
    """
    summary = await payouts.creator_balance_summary(db, current_user)
    return CreatorBalanceResponse(
        balance=WalletBalanceResponse.from_wallet(current_user.uuid, summary["wallet"]),
        recent_earnings=[EarningsEventResponse.from_event(e) for e in summary["recent_earnings"]],
        pending_payouts=[PayoutRequestResponse.from_payout(p) for p in summary["pending_payouts"]],
        can_withdraw=summary["can_withdraw"],
        minimum_payout=cents_to_float(summary["minimum_payout_cents"]),
        next_payout_date=summary["next_payout_date"],
    )


@router.get("/api/creator/earnings", response_model=List[EarningsEventResponse])
async def list_creator_earnings(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(creator_required),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(EarningsEvent)
        .where(EarningsEvent.creator_id == current_user.uuid)
        .order_by(EarningsEvent.event_date.desc())
        .offset(offset)
        .limit(limit)
    )
    return [EarningsEventResponse.from_event(e) for e in result.scalars().all()]


@router.get("/api/creator/payout-accounts", response_model=List[PayoutAccountResponse])
async def list_payout_accounts(
    current_user: User = Depends(creator_required),
    db: AsyncSession = Depends(get_db)
):
    return await payouts.list_payout_accounts(db, current_user)


@router.post(
    "/api/creator/payout-accounts",
    response_model=PayoutAccountResponse,
    status_code=status.HTTP_201_CREATED
)
async def create_payout_account(
    request_data: PayoutAccountCreate,
    current_user: User = Depends(creator_required),
    db: AsyncSession = Depends(get_db)
):
    return await payouts.create_payout_account(
        db,
        current_user,
        request_data.account_type,
        request_data.account_name,
        request_data.details,
        request_data.is_default,
    )


@router.post(
    "/api/creator/payouts",
    response_model=PayoutRequestResponse,
    status_code=status.HTTP_201_CREATED
)
@limiter.limit(settings.PAYOUT_REQUEST_RATE_LIMIT)
async def request_payout(
    request: Request,
    request_data: PayoutRequestCreate,
    current_user: User = Depends(creator_required),
    db: AsyncSession = Depends(get_db)
):
    """
    Ask for a withdrawal.

    - The amount is held immediately and cannot be spent or requested twice
    - Paid on the next payout day once approved
    """
    payout = await payouts.request_payout(
        db,
        current_user,
        request_data.amount,
        request_data.payout_method,
        request_data.payout_account_id,
        notes=request_data.notes,
    )
    return PayoutRequestResponse.from_payout(payout)


@router.get("/api/creator/payouts", response_model=List[PayoutRequestResponse])
async def list_my_payouts(
    current_user: User = Depends(creator_required),
    db: AsyncSession = Depends(get_db)
):
    return [PayoutRequestResponse.from_payout(p) for p in await payouts.list_creator_payouts(db, current_user)]
