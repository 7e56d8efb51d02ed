"""Atomic wallet ledger operations.

Every mutation is a single conditional ``UPDATE ... WHERE <guard>`` so the
check and the write happen in one statement: two concurrent reservations
against the same wallet can never both pass the balance check. Callers own
the surrounding database transaction; a failed guard raises before anything
else in that transaction is committed.
"""
import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InsufficientBalance, InvalidStateTransition
from app.models.balance import WalletBalance, LedgerEntry
from app.services.money import from_cents

logger = logging.getLogger(__name__)


async def get_wallet(db: AsyncSession, holder_id: str) -> WalletBalance | None:
    """Fresh read of a holder's wallet (bypasses stale identity-map state)."""
    result = await db.execute(
        select(WalletBalance)
        .where(WalletBalance.holder_id == holder_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ensure_wallet(db: AsyncSession, holder_id: str) -> WalletBalance:
    """Return the holder's wallet, creating an empty one on first use.

    Creation is an insert that ignores a conflicting holder, so two requests
    opening the same wallet at once both end up with the one row.
    """
    wallet = await get_wallet(db, holder_id)
    if wallet is not None:
        return wallet

    insert = postgresql.insert if db.get_bind().dialect.name == "postgresql" else sqlite.insert
    await db.execute(
        insert(WalletBalance)
        .values(holder_id=holder_id)
        .on_conflict_do_nothing(index_elements=[WalletBalance.holder_id])
    )
    return await get_wallet(db, holder_id)


async def _guarded_update(db: AsyncSession, holder_id: str, guard, **values) -> bool:
    stmt = (
        update(WalletBalance)
        .where(WalletBalance.holder_id == holder_id)
        .values(updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if guard is not None:
        stmt = stmt.where(guard)
    result = await db.execute(stmt)
    return result.rowcount == 1


def _journal(db: AsyncSession, holder_id: str, entry_type: str, amount_cents: int,
             description: str | None, reference_id: str | None) -> LedgerEntry:
    entry = LedgerEntry(
        holder_id=holder_id,
        entry_type=entry_type,
        amount_cents=amount_cents,
        description=description,
        reference_id=reference_id,
    )
    db.add(entry)
    return entry


def _check_amount(amount_cents: int) -> None:
    if amount_cents < 0:
        raise ValueError("Ledger amounts must be non-negative")


async def debit(
    db: AsyncSession,
    holder_id: str,
    amount_cents: int,
    description: str,
    reference_id: str | None = None,
) -> LedgerEntry:
    """Take ``amount_cents`` out of the available balance.

    Raises InsufficientBalance if the available balance is too low.
    """
    _check_amount(amount_cents)
    await ensure_wallet(db, holder_id)
    ok = await _guarded_update(
        db, holder_id,
        WalletBalance.available_cents >= amount_cents,
        available_cents=WalletBalance.available_cents - amount_cents,
    )
    if not ok:
        raise InsufficientBalance("Insufficient wallet balance")

    logger.info(f"Debited ${from_cents(amount_cents)} from wallet {holder_id}")
    return _journal(db, holder_id, "debit", amount_cents, description, reference_id)


async def credit(
    db: AsyncSession,
    holder_id: str,
    amount_cents: int,
    description: str,
    reference_id: str | None = None,
) -> LedgerEntry:
    """Add ``amount_cents`` to the available balance."""
    _check_amount(amount_cents)
    await ensure_wallet(db, holder_id)
    await _guarded_update(
        db, holder_id, None,
        available_cents=WalletBalance.available_cents + amount_cents,
    )
    logger.info(f"Credited ${from_cents(amount_cents)} to wallet {holder_id}")
    return _journal(db, holder_id, "credit", amount_cents, description, reference_id)


async def reserve(
    db: AsyncSession,
    holder_id: str,
    amount_cents: int,
    description: str,
    reference_id: str | None = None,
) -> LedgerEntry:
    """Move available -> held in one check-and-write step."""
    _check_amount(amount_cents)
    await ensure_wallet(db, holder_id)
    ok = await _guarded_update(
        db, holder_id,
        WalletBalance.available_cents >= amount_cents,
        available_cents=WalletBalance.available_cents - amount_cents,
        held_cents=WalletBalance.held_cents + amount_cents,
    )
    if not ok:
        raise InsufficientBalance("Insufficient available balance for this payout")

    logger.info(f"Reserved ${from_cents(amount_cents)} in wallet {holder_id}")
    return _journal(db, holder_id, "reserve", amount_cents, description, reference_id)


async def release(
    db: AsyncSession,
    holder_id: str,
    amount_cents: int,
    description: str,
    reference_id: str | None = None,
) -> LedgerEntry:
    """Return held funds to available (rejected or failed payout)."""
    _check_amount(amount_cents)
    ok = await _guarded_update(
        db, holder_id,
        WalletBalance.held_cents >= amount_cents,
        held_cents=WalletBalance.held_cents - amount_cents,
        available_cents=WalletBalance.available_cents + amount_cents,
    )
    if not ok:
        logger.error(f"Release of ${from_cents(amount_cents)} exceeds held funds for wallet {holder_id}")
        raise InvalidStateTransition("Held balance is lower than the amount being released")

    logger.info(f"Released ${from_cents(amount_cents)} back to wallet {holder_id}")
    return _journal(db, holder_id, "release", amount_cents, description, reference_id)


async def settle(
    db: AsyncSession,
    holder_id: str,
    amount_cents: int,
    description: str,
    reference_id: str | None = None,
) -> LedgerEntry:
    """Finalize held funds as withdrawn (completed payout)."""
    _check_amount(amount_cents)
    ok = await _guarded_update(
        db, holder_id,
        WalletBalance.held_cents >= amount_cents,
        held_cents=WalletBalance.held_cents - amount_cents,
        total_withdrawn_cents=WalletBalance.total_withdrawn_cents + amount_cents,
    )
    if not ok:
        logger.error(f"Settlement of ${from_cents(amount_cents)} exceeds held funds for wallet {holder_id}")
        raise InvalidStateTransition("Held balance is lower than the amount being settled")

    logger.info(f"Settled ${from_cents(amount_cents)} withdrawn from wallet {holder_id}")
    return _journal(db, holder_id, "settle", amount_cents, description, reference_id)


async def add_pending(
    db: AsyncSession,
    holder_id: str,
    amount_cents: int,
    description: str,
    reference_id: str | None = None,
) -> LedgerEntry:
    """Post a creator earning to pending (and lifetime) balance."""
    _check_amount(amount_cents)
    await ensure_wallet(db, holder_id)
    await _guarded_update(
        db, holder_id, None,
        pending_cents=WalletBalance.pending_cents + amount_cents,
        lifetime_earnings_cents=WalletBalance.lifetime_earnings_cents + amount_cents,
    )
    return _journal(db, holder_id, "pending", amount_cents, description, reference_id)


async def mature(
    db: AsyncSession,
    holder_id: str,
    amount_cents: int,
    description: str,
    reference_id: str | None = None,
) -> LedgerEntry:
    """Move matured earnings pending -> available."""
    _check_amount(amount_cents)
    ok = await _guarded_update(
        db, holder_id,
        WalletBalance.pending_cents >= amount_cents,
        pending_cents=WalletBalance.pending_cents - amount_cents,
        available_cents=WalletBalance.available_cents + amount_cents,
    )
    if not ok:
        logger.error(f"Maturing ${from_cents(amount_cents)} exceeds pending funds for wallet {holder_id}")
        raise InvalidStateTransition("Pending balance is lower than the amount being matured")
    return _journal(db, holder_id, "mature", amount_cents, description, reference_id)
