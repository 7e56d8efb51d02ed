"""Creator commission split and earnings maturation.

A completed sale of a creator's product or course produces one
``EarningsEvent``: the creator gets ``round_half_up(gross * CREATOR_SHARE)``
and the platform gets the remainder, so the two always add up to the gross
amount exactly. The creator's share is posted to their pending balance and
only becomes withdrawable on the next maturation run (the 5th of the month).
"""
import logging
import time
from datetime import date, datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.earning import EarningsEvent, ProductDownloadStat, SettlementRun
from app.models.product import Product
from app.models.transaction import SubjectType, Transaction
from app.services import ledger
from app.services.money import apply_rate, from_cents, to_cents

logger = logging.getLogger(__name__)


def split_sale(gross_cents: int) -> tuple[int, int]:
    """Return ``(creator_cents, platform_cents)`` for a sale."""
    creator_cents = apply_rate(gross_cents, settings.CREATOR_SHARE)
    return creator_cents, gross_cents - creator_cents


async def on_sale_completed(db: AsyncSession, transaction: Transaction) -> Optional[EarningsEvent]:
    """Record the creator's share of a settled sale.

    Returns ``None`` when the subject earns nobody anything: non-revenue
    subjects, system-owned products and zero-amount orders.
    """
    if transaction.subject_type not in SubjectType.REVENUE_BEARING or transaction.amount_cents <= 0:
        return None

    product = await db.get(Product, transaction.subject_id)
    if product is None or product.creator_id is None:
        logger.info(f"No creator earnings for system-owned item {transaction.subject_id}")
        return None

    creator_cents, platform_cents = split_sale(transaction.amount_cents)
    event = EarningsEvent(
        creator_id=product.creator_id,
        event_type="course_sale" if product.product_type == "course" else "product_sale",
        source_transaction_id=transaction.uuid,
        source_product_id=product.uuid,
        gross_amount_cents=transaction.amount_cents,
        creator_amount_cents=creator_cents,
        platform_amount_cents=platform_cents,
        status="pending",
    )
    db.add(event)
    await ledger.add_pending(
        db, product.creator_id, creator_cents,
        f"Sale of {product.name}",
        reference_id=transaction.uuid,
    )
    await db.flush()

    logger.info(
        f"Earnings event for creator {product.creator_id}: gross ${from_cents(transaction.amount_cents)}, "
        f"creator ${from_cents(creator_cents)}, platform ${from_cents(platform_cents)}"
    )
    return event


async def record_free_download(db: AsyncSession, product: Product) -> Optional[EarningsEvent]:
    """Count a free download and pay the creator a flat reward each time the
    count crosses another milestone. No commission is taken on rewards."""
    stat = await db.get(ProductDownloadStat, product.uuid)
    if stat is None:
        stat = ProductDownloadStat(product_id=product.uuid, free_downloads=0, last_milestone_count=0)
        db.add(stat)
        await db.flush()

    await db.execute(
        update(ProductDownloadStat)
        .where(ProductDownloadStat.product_id == product.uuid)
        .values(
            free_downloads=ProductDownloadStat.free_downloads + 1,
            last_download_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )

    if product.creator_id is None:
        return None

    milestone = settings.FREE_DOWNLOAD_MILESTONE
    # Claim the milestone in the same statement that checks it
    claimed = await db.execute(
        update(ProductDownloadStat)
        .where(
            ProductDownloadStat.product_id == product.uuid,
            ProductDownloadStat.free_downloads >= ProductDownloadStat.last_milestone_count + milestone,
        )
        .values(last_milestone_count=ProductDownloadStat.last_milestone_count + milestone)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        return None

    reward_cents = to_cents(settings.FREE_DOWNLOAD_REWARD)
    event = EarningsEvent(
        creator_id=product.creator_id,
        event_type="free_download_milestone",
        source_product_id=product.uuid,
        gross_amount_cents=reward_cents,
        creator_amount_cents=reward_cents,
        platform_amount_cents=0,
        status="pending",
    )
    db.add(event)
    await ledger.add_pending(
        db, product.creator_id, reward_cents,
        f"Free download milestone for {product.name}",
        reference_id=product.uuid,
    )
    await db.flush()

    logger.info(f"Free download milestone reached for product {product.uuid}, creator {product.creator_id}")
    return event


async def _mature_creator(db: AsyncSession, creator_id: str, now: datetime) -> tuple[int, int]:
    """Move one creator's pending events to available. Returns (events, cents)."""
    result = await db.execute(
        select(EarningsEvent.uuid, EarningsEvent.creator_amount_cents).where(
            EarningsEvent.creator_id == creator_id,
            EarningsEvent.status == "pending",
        )
    )
    rows = result.all()
    if not rows:
        return 0, 0

    event_ids = [row[0] for row in rows]
    total_cents = sum(row[1] for row in rows)

    flipped = await db.execute(
        update(EarningsEvent)
        .where(EarningsEvent.uuid.in_(event_ids), EarningsEvent.status == "pending")
        .values(status="available", matured_at=now)
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != len(event_ids):
        # Another run touched these events; let the caller roll back and retry later
        raise RuntimeError(f"Earnings for creator {creator_id} changed during maturation")

    await ledger.mature(
        db, creator_id, total_cents,
        f"Monthly earnings settlement ({len(event_ids)} events)",
    )
    return len(event_ids), total_cents


async def run_earnings_maturation(db: AsyncSession, run_date: Optional[date] = None) -> SettlementRun:
    """Mature all pending earnings. Runs at most once per calendar date; a
    failed run for the date may be retried."""
    run_date = run_date or datetime.utcnow().date()
    settlement_date = run_date.isoformat()

    result = await db.execute(
        select(SettlementRun).where(SettlementRun.settlement_date == settlement_date)
    )
    run = result.scalar_one_or_none()

    if run is not None and run.status in ("completed", "running"):
        logger.info(f"Settlement for {settlement_date} already {run.status} - skipping")
        return run

    if run is None:
        run = SettlementRun(settlement_date=settlement_date, status="running")
        db.add(run)
    else:
        logger.info(f"Retrying failed settlement run for {settlement_date}")
        run.status = "running"
        run.error_message = None
        run.run_at = datetime.utcnow()

    try:
        await db.commit()
    except IntegrityError:
        # Another instance inserted the run first
        await db.rollback()
        result = await db.execute(
            select(SettlementRun).where(SettlementRun.settlement_date == settlement_date)
        )
        return result.scalar_one()

    run_id = run.uuid
    started = time.monotonic()
    now = datetime.utcnow()
    creators = events = total_cents = 0

    try:
        creator_ids = (await db.execute(
            select(EarningsEvent.creator_id).where(EarningsEvent.status == "pending").distinct()
        )).scalars().all()

        for creator_id in creator_ids:
            matured, cents = await _mature_creator(db, creator_id, now)
            await db.commit()
            if matured:
                creators += 1
                events += matured
                total_cents += cents
                logger.info(f"Matured ${from_cents(cents)} for creator {creator_id}")

        run.status = "completed"
        run.creators_processed = creators
        run.events_matured = events
        run.total_matured_cents = total_cents
        run.completed_at = datetime.utcnow()
        run.duration_ms = int((time.monotonic() - started) * 1000)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Settlement run for {settlement_date} failed: {e}")
        run = await db.get(SettlementRun, run_id, populate_existing=True)
        run.status = "failed"
        run.error_message = str(e)
        run.creators_processed = creators
        run.events_matured = events
        run.total_matured_cents = total_cents
        await db.commit()
        raise

    logger.info(
        f"Settlement {settlement_date} completed: {creators} creators, {events} events, "
        f"${from_cents(total_cents)} in {run.duration_ms}ms"
    )
    return run


async def settlement_preview(db: AsyncSession) -> list[dict]:
    """What the next maturation run would move, per creator."""
    result = await db.execute(
        select(
            EarningsEvent.creator_id,
            func.count(EarningsEvent.uuid),
            func.sum(EarningsEvent.creator_amount_cents),
        )
        .where(EarningsEvent.status == "pending")
        .group_by(EarningsEvent.creator_id)
    )
    return [
        {"creator_id": creator_id, "events": count, "pending_cents": int(total or 0)}
        for creator_id, count, total in result.all()
    ]
