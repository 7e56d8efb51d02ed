"""Wallet balance and ledger history router."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc, func
from app.database import get_db
from app.models.balance import LedgerEntry
from app.auth.dependencies import get_current_active_user
from app.models.user import User
from app.schemas.balance import LedgerEntryResponse, LedgerHistoryResponse, WalletBalanceResponse
from app.services import ledger

router = APIRouter()


@router.get("/api/users/me/wallet", response_model=WalletBalanceResponse)
async def get_wallet_balance(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Get the wallet buckets for the authenticated user."""
    wallet = await ledger.get_wallet(db, current_user.uuid)
    return WalletBalanceResponse.from_wallet(current_user.uuid, wallet)


@router.get("/api/users/me/wallet/history", response_model=LedgerHistoryResponse)
async def get_wallet_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Get ledger entries for the authenticated user (paginated, newest first).
    """
    count_result = await db.execute(
        select(func.count(LedgerEntry.uuid)).where(LedgerEntry.holder_id == current_user.uuid)
    )
    total = count_result.scalar() or 0

    offset = (page - 1) * page_size
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.holder_id == current_user.uuid)
        .order_by(desc(LedgerEntry.created_at))
        .offset(offset)
        .limit(page_size)
    )
    entries = result.scalars().all()

    total_pages = (total + page_size - 1) // page_size

    return LedgerHistoryResponse(
        entries=[LedgerEntryResponse.from_entry(e) for e in entries],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages
    )
