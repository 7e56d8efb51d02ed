"""Admin endpoints for payout review and earnings settlement."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.user import User
from app.schemas.payouts import (
    BulkMarkProcessingRequest, BulkResult, FailPayoutRequest, FinalizeSummary,
    MarkProcessingRequest, PayoutListResponse, PayoutRequestResponse, RejectPayoutRequest,
    SettlementPreviewEntry, SettlementPreviewResponse, SettlementRunResponse
)
from app.auth.dependencies import admin_required, payout_reviewer_required
from app.services import commission, payouts
from app.services.money import cents_to_float

router = APIRouter()


@router.get("/payouts", response_model=PayoutListResponse)
async def list_payouts(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(payout_reviewer_required),
    db: AsyncSession = Depends(get_db)
):
    """
    List payout requests, newest first.

    - Filter by status (awaiting_admin, approved, payment_processing, disbursing, ...)
    - Paginated with limit/offset
    """
    items, total = await payouts.list_payouts(db, status_filter, limit, offset)
    return PayoutListResponse(
        payouts=[PayoutRequestResponse.from_payout(p) for p in items],
        total=total
    )


@router.post("/payouts/{payout_id}/approve", response_model=PayoutRequestResponse)
async def approve_payout(
    payout_id: str,
    current_user: User = Depends(payout_reviewer_required),
    db: AsyncSession = Depends(get_db)
):
    payout = await payouts.approve_payout(db, payout_id, current_user)
    return PayoutRequestResponse.from_payout(payout)


@router.post("/payouts/{payout_id}/reject", response_model=PayoutRequestResponse)
async def reject_payout(
    payout_id: str,
    request_data: RejectPayoutRequest,
    current_user: User = Depends(payout_reviewer_required),
    db: AsyncSession = Depends(get_db)
):
    """Reject a request and give the held funds back to the creator."""
    payout = await payouts.reject_payout(db, payout_id, current_user, request_data.reason)
    return PayoutRequestResponse.from_payout(payout)


@router.post("/payouts/{payout_id}/mark-processing", response_model=PayoutRequestResponse)
async def mark_payout_processing(
    payout_id: str,
    request_data: MarkProcessingRequest,
    current_user: User = Depends(payout_reviewer_required),
    db: AsyncSession = Depends(get_db)
):
    payout = await payouts.mark_processing(
        db, payout_id, current_user,
        payment_reference=request_data.payment_reference,
        admin_notes=request_data.admin_notes,
    )
    return PayoutRequestResponse.from_payout(payout)


@router.post("/payouts/bulk-mark-processing", response_model=List[BulkResult])
async def bulk_mark_processing(
    request_data: BulkMarkProcessingRequest,
    current_user: User = Depends(payout_reviewer_required),
    db: AsyncSession = Depends(get_db)
):
    """Queue several approved payouts at once. Each one succeeds or fails on its own."""
    return await payouts.bulk_mark_processing(db, request_data.payout_ids, current_user)


@router.post("/payouts/{payout_id}/fail", response_model=PayoutRequestResponse)
async def fail_payout(
    payout_id: str,
    request_data: FailPayoutRequest,
    current_user: User = Depends(payout_reviewer_required),
    db: AsyncSession = Depends(get_db)
):
    payout = await payouts.fail_payout(db, payout_id, current_user, request_data.reason)
    return PayoutRequestResponse.from_payout(payout)


@router.post("/payouts/finalize-due", response_model=FinalizeSummary)
async def finalize_due_payouts(
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """Run payout finalization now instead of waiting for the scheduler."""
    return await payouts.finalize_due_payouts(db)


@router.get("/earnings/settlement-preview", response_model=SettlementPreviewResponse)
async def settlement_preview(
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    rows = await commission.settlement_preview(db)
    return SettlementPreviewResponse(
        creators=[
            SettlementPreviewEntry(
                creator_id=row["creator_id"],
                events=row["events"],
                pending_amount=cents_to_float(row["pending_cents"]),
            )
            for row in rows
        ],
        total_pending=cents_to_float(sum(row["pending_cents"] for row in rows)),
    )


@router.post("/earnings/settle", response_model=SettlementRunResponse)
async def run_settlement(
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """Mature pending earnings for today. A no-op if today's run already completed."""
    run = await commission.run_earnings_maturation(db)
    return SettlementRunResponse.from_run(run)
