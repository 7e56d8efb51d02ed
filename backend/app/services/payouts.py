"""Creator payout requests.

    awaiting_admin -> approved -> payment_processing -> disbursing -> completed
    awaiting_admin -> rejected
    payment_processing -> failed   (reversed by a reviewer before sending)
    disbursing -> failed           (refused by the provider)

The requested amount is reserved (available -> held) when the request is
created. Every status change below is a conditional update on the current
status, and only the caller whose update matched applies the ledger side
effect, so held funds are released or settled exactly once.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import InsufficientBalance, InvalidStateTransition
from app.models.earning import EarningsEvent
from app.models.payout import PAYOUT_METHODS, PayoutAccount, PayoutRequest, PayoutStatus
from app.models.user import User
from app.services import ledger
from app.services.email_service import EmailService
from app.services.gateways import ProviderError, ProviderTimeout
from app.services.gateways.disbursement import get_disburser
from app.services.money import from_cents, to_cents

logger = logging.getLogger(__name__)

# Fields each payout account type must carry in ``details``
REQUIRED_ACCOUNT_DETAILS = {
    "bank": ("bank_name", "account_number"),
    "paypal": ("email",),
    "crypto": ("wallet_address", "network"),
    "mobile_money": ("phone_number", "provider"),
}


def next_payout_date(now: Optional[datetime] = None) -> datetime:
    """The payout day of next month (the 5th by default), at midnight."""
    now = now or datetime.utcnow()
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    return datetime(year, month, settings.PAYOUT_DAY_OF_MONTH)


def minimum_payout_cents() -> int:
    return to_cents(settings.MINIMUM_PAYOUT_AMOUNT)


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    return await db.get(User, user_id)


async def _reload(db: AsyncSession, payout_id: str) -> PayoutRequest:
    result = await db.execute(
        select(PayoutRequest)
        .where(PayoutRequest.uuid == payout_id)
        .execution_options(populate_existing=True)
    )
    payout = result.scalar_one_or_none()
    if payout is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout request not found")
    return payout


async def _move(db: AsyncSession, payout_id: str, expected: str, target: str, **values) -> bool:
    result = await db.execute(
        update(PayoutRequest)
        .where(PayoutRequest.uuid == payout_id, PayoutRequest.status == expected)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _refuse(db: AsyncSession, payout_id: str, action: str) -> None:
    """Raise the right error after a conditional update matched nothing."""
    payout = await _reload(db, payout_id)
    logger.error(f"Refused to {action} payout {payout_id} in status {payout.status}")
    raise InvalidStateTransition(f"Cannot {action} a payout that is {payout.status}")


# ── Payout accounts ──────────────────────────────────────────────────────────

async def create_payout_account(
    db: AsyncSession,
    user: User,
    account_type: str,
    account_name: str,
    details: dict,
    is_default: bool = False,
) -> PayoutAccount:
    if account_type not in PAYOUT_METHODS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported account type '{account_type}'"
        )
    missing = [key for key in REQUIRED_ACCOUNT_DETAILS[account_type] if not details.get(key)]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing account details: {', '.join(missing)}"
        )

    if is_default:
        await db.execute(
            update(PayoutAccount)
            .where(PayoutAccount.user_id == user.uuid)
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )

    account = PayoutAccount(
        user_id=user.uuid,
        account_type=account_type,
        account_name=account_name,
        details=details,
        is_default=is_default,
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)
    return account


async def list_payout_accounts(db: AsyncSession, user: User) -> list[PayoutAccount]:
    result = await db.execute(
        select(PayoutAccount)
        .where(PayoutAccount.user_id == user.uuid)
        .order_by(PayoutAccount.is_default.desc(), PayoutAccount.created_at)
    )
    return list(result.scalars().all())


# ── Creator side ─────────────────────────────────────────────────────────────

async def request_payout(
    db: AsyncSession,
    creator: User,
    amount: Decimal,
    payout_method: str,
    payout_account_id: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PayoutRequest:
    """Create a payout request and reserve its amount in one database
    transaction. Two concurrent requests can never both reserve the same
    funds; the loser gets ``InsufficientBalance``."""
    now = now or datetime.utcnow()
    amount_cents = to_cents(amount)

    if amount_cents < minimum_payout_cents():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Minimum payout amount is ${settings.MINIMUM_PAYOUT_AMOUNT}"
        )
    if payout_method not in PAYOUT_METHODS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported payout method '{payout_method}'"
        )

    account = await db.get(PayoutAccount, payout_account_id)
    if account is None or account.user_id != creator.uuid:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout account not found")
    if account.account_type != payout_method:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Payout account is a {account.account_type} account, not {payout_method}"
        )

    creator_id = creator.uuid
    payout = PayoutRequest(
        creator_id=creator_id,
        amount_requested_cents=amount_cents,
        payout_method=payout_method,
        payout_account_id=account.uuid,
        status=PayoutStatus.AWAITING_ADMIN,
        creator_notes=notes,
        requested_at=now,
        payout_date=next_payout_date(now),
    )
    db.add(payout)
    await db.flush()

    try:
        await ledger.reserve(db, creator_id, amount_cents, "Payout request", reference_id=payout.uuid)
    except InsufficientBalance:
        await db.rollback()
        logger.info(f"Payout request of ${from_cents(amount_cents)} by {creator_id} refused: insufficient balance")
        raise

    await db.commit()
    logger.info(f"Payout request {payout.uuid} created: ${from_cents(amount_cents)} via {payout_method} for {creator_id}")
    EmailService.send_payout_requested_email(creator, payout)
    return payout


async def list_creator_payouts(db: AsyncSession, creator: User, limit: int = 50) -> list[PayoutRequest]:
    result = await db.execute(
        select(PayoutRequest)
        .where(PayoutRequest.creator_id == creator.uuid)
        .order_by(PayoutRequest.requested_at.desc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def creator_balance_summary(db: AsyncSession, creator: User, now: Optional[datetime] = None) -> dict:
    """Everything the creator earnings dashboard shows."""
    wallet = await ledger.get_wallet(db, creator.uuid)

    earnings = (await db.execute(
        select(EarningsEvent)
        .where(EarningsEvent.creator_id == creator.uuid)
        .order_by(EarningsEvent.event_date.desc())
        .limit(10)
    )).scalars().all()

    open_payouts = (await db.execute(
        select(PayoutRequest)
        .where(
            PayoutRequest.creator_id == creator.uuid,
            PayoutRequest.status.not_in(PayoutStatus.TERMINAL),
        )
        .order_by(PayoutRequest.requested_at.desc())
    )).scalars().all()

    available = wallet.available_cents if wallet else 0
    return {
        "wallet": wallet,
        "recent_earnings": list(earnings),
        "pending_payouts": list(open_payouts),
        "can_withdraw": available >= minimum_payout_cents(),
        "minimum_payout_cents": minimum_payout_cents(),
        "next_payout_date": next_payout_date(now),
    }


# ── Reviewer side ────────────────────────────────────────────────────────────

async def list_payouts(
    db: AsyncSession,
    status_filter: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[PayoutRequest], int]:
    query = select(PayoutRequest)
    count_query = select(func.count(PayoutRequest.uuid))
    if status_filter:
        query = query.where(PayoutRequest.status == status_filter)
        count_query = count_query.where(PayoutRequest.status == status_filter)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(PayoutRequest.requested_at.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all()), total


async def approve_payout(db: AsyncSession, payout_id: str, reviewer: User) -> PayoutRequest:
    now = datetime.utcnow()
    if not await _move(
        db, payout_id, PayoutStatus.AWAITING_ADMIN, PayoutStatus.APPROVED,
        decided_at=now, processed_by=reviewer.uuid,
    ):
        await _refuse(db, payout_id, "approve")

    await db.commit()
    payout = await _reload(db, payout_id)
    logger.info(f"Payout {payout_id} approved by {reviewer.uuid}")

    creator = await _get_user(db, payout.creator_id)
    if creator:
        EmailService.send_payout_approved_email(creator, payout)
    return payout


async def reject_payout(db: AsyncSession, payout_id: str, reviewer: User, reason: str) -> PayoutRequest:
    reason = (reason or "").strip()
    if not reason:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A rejection reason is required")

    payout = await _reload(db, payout_id)
    if not await _move(
        db, payout_id, PayoutStatus.AWAITING_ADMIN, PayoutStatus.REJECTED,
        rejection_reason=reason, decided_at=datetime.utcnow(), processed_by=reviewer.uuid,
    ):
        await _refuse(db, payout_id, "reject")

    await ledger.release(
        db, payout.creator_id, payout.amount_requested_cents,
        f"Payout rejected: {reason}", reference_id=payout_id,
    )
    await db.commit()
    payout = await _reload(db, payout_id)
    logger.info(f"Payout {payout_id} rejected by {reviewer.uuid}: {reason}")

    creator = await _get_user(db, payout.creator_id)
    if creator:
        EmailService.send_payout_rejected_email(creator, payout)
    return payout


async def mark_processing(
    db: AsyncSession,
    payout_id: str,
    reviewer: User,
    payment_reference: Optional[str] = None,
    admin_notes: Optional[str] = None,
) -> PayoutRequest:
    """Queue an approved payout for the next finalization run."""
    values = {"processed_at": datetime.utcnow(), "processed_by": reviewer.uuid}
    if payment_reference:
        values["payment_reference"] = payment_reference
    if admin_notes:
        values["admin_notes"] = admin_notes

    if not await _move(db, payout_id, PayoutStatus.APPROVED, PayoutStatus.PAYMENT_PROCESSING, **values):
        await _refuse(db, payout_id, "process")

    await db.commit()
    logger.info(f"Payout {payout_id} marked payment_processing by {reviewer.uuid}")
    return await _reload(db, payout_id)


async def bulk_mark_processing(db: AsyncSession, payout_ids: list[str], reviewer: User) -> list[dict]:
    results = []
    for payout_id in payout_ids:
        try:
            await mark_processing(db, payout_id, reviewer)
            results.append({"payout_id": payout_id, "success": True, "error": None})
        except HTTPException as e:
            results.append({"payout_id": payout_id, "success": False, "error": e.detail})
    processed = sum(1 for r in results if r["success"])
    logger.info(f"Bulk mark processing by {reviewer.uuid}: {processed}/{len(payout_ids)} succeeded")
    return results


async def _fail_processing(
    db: AsyncSession,
    payout: PayoutRequest,
    reason: str,
    by_job: bool,
    reviewer_id: Optional[str],
    expected: str = PayoutStatus.PAYMENT_PROCESSING,
) -> bool:
    values = {"rejection_reason": reason, "finalized_at": datetime.utcnow(), "finalized_by_job": by_job}
    if reviewer_id:
        values["processed_by"] = reviewer_id
    if not await _move(db, payout.uuid, expected, PayoutStatus.FAILED, **values):
        return False
    await ledger.release(
        db, payout.creator_id, payout.amount_requested_cents,
        f"Payout failed: {reason}", reference_id=payout.uuid,
    )
    return True


async def fail_payout(db: AsyncSession, payout_id: str, reviewer: User, reason: str) -> PayoutRequest:
    """Reverse a payout that is queued but not yet sent. Once the
    finalization job has claimed it the payout can no longer be failed."""
    reason = (reason or "").strip()
    if not reason:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A failure reason is required")

    payout = await _reload(db, payout_id)
    if not await _fail_processing(db, payout, reason, by_job=False, reviewer_id=reviewer.uuid):
        await _refuse(db, payout_id, "fail")

    await db.commit()
    payout = await _reload(db, payout_id)
    logger.info(f"Payout {payout_id} failed by {reviewer.uuid}: {reason}")

    creator = await _get_user(db, payout.creator_id)
    if creator:
        EmailService.send_payout_failed_email(creator, payout)
    return payout


async def finalize_due_payouts(db: AsyncSession, now: Optional[datetime] = None, transport=None) -> dict:
    """Send every queued payout whose payout date has arrived.

    Each payout is claimed (``disbursing``) and committed before anything is
    sent, so a reviewer can no longer reverse it while the transfer is in
    flight. A sent payout is completed and its held funds settled; a payout
    the provider refuses is failed and its funds released. A transfer whose
    outcome is unknown (provider timeout) stays ``disbursing`` for review.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(PayoutRequest.uuid).where(
            PayoutRequest.status == PayoutStatus.PAYMENT_PROCESSING,
            PayoutRequest.payout_date <= now,
        )
    )
    due_ids = list(result.scalars().all())
    summary = {"completed": 0, "failed": 0, "skipped": 0}

    for payout_id in due_ids:
        if not await _move(db, payout_id, PayoutStatus.PAYMENT_PROCESSING, PayoutStatus.DISBURSING):
            await db.rollback()
            summary["skipped"] += 1
            continue
        await db.commit()

        payout = await _reload(db, payout_id)
        account = await db.get(PayoutAccount, payout.payout_account_id)
        creator = await _get_user(db, payout.creator_id)

        try:
            reference = await get_disburser(payout.payout_method, transport).send(payout, account)
        except ProviderTimeout as e:
            logger.error(f"Disbursement of payout {payout_id} timed out, left disbursing for review: {e}")
            summary["skipped"] += 1
            continue
        except ProviderError as e:
            logger.warning(f"Disbursement of payout {payout_id} failed: {e}")
            if await _fail_processing(
                db, payout, str(e), by_job=True, reviewer_id=None, expected=PayoutStatus.DISBURSING
            ):
                await db.commit()
                summary["failed"] += 1
                if creator:
                    EmailService.send_payout_failed_email(creator, await _reload(db, payout_id))
            else:
                await db.rollback()
                logger.error(f"Payout {payout_id} left disbursing while its transfer failed")
                summary["skipped"] += 1
            continue

        completed = await _move(
            db, payout_id, PayoutStatus.DISBURSING, PayoutStatus.COMPLETED,
            payment_reference=reference, finalized_at=now, finalized_by_job=True,
        )
        if not completed:
            await db.rollback()
            logger.error(f"Payout {payout_id} was sent as {reference} but is no longer disbursing; needs review")
            summary["skipped"] += 1
            continue

        await ledger.settle(
            db, payout.creator_id, payout.amount_requested_cents,
            f"Payout completed ({reference})", reference_id=payout_id,
        )
        await db.commit()
        summary["completed"] += 1
        logger.info(f"Payout {payout_id} completed: ${from_cents(payout.amount_requested_cents)} ref {reference}")
        if creator:
            EmailService.send_payout_completed_email(creator, await _reload(db, payout_id))

    logger.info(f"Payout finalization: {summary}")
    return summary
