"""Checkout orchestrator: drives a transaction through its state machine.

    created -> pending_gateway -> succeeded | failed | cancelled

Every state change is a conditional ``UPDATE ... WHERE state IN (...)`` so
concurrent confirms, webhooks and cancels race on the database row and only
one of them wins. The winning ``succeeded`` transition commits together with
the subject unlock (purchase, membership, ad campaign) and the creator's
earnings, so nothing is ever half settled.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import GatewayError, GatewayTimeout, InsufficientBalance, InvalidStateTransition, StaleQuote
from app.models.ad_campaign import AdCampaign
from app.models.product import Product
from app.models.purchase import Purchase
from app.models.transaction import GATEWAYS, SubjectType, Transaction, TransactionState
from app.models.user import User
from app.services import commission, memberships
from app.services.gateways import CancelStatus, ConfirmResult, ProviderError, ProviderTimeout, get_gateway
from app.services.gateways.card import ensure_customer
from app.services.money import to_cents
from app.services.proration import total_days_in_cycle

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "Gateway confirmation timed out"


@dataclass
class CheckoutResult:
    transaction: Transaction
    already_processed: bool = False
    retry_after_seconds: Optional[int] = None


@dataclass
class PricedSubject:
    amount_cents: int
    description: str
    extra: dict


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


async def _price_subject(
    db: AsyncSession,
    subject_type: str,
    subject_id: str,
    payer: Optional[User],
    billing_cycle: Optional[str],
    now: datetime,
) -> PricedSubject:
    """Look up the authoritative price of what is being bought."""
    if subject_type == SubjectType.ORDER:
        product = await db.get(Product, subject_id)
        if product is None or not product.is_active:
            raise _not_found("Product not found")
        return PricedSubject(product.price_cents, product.name, {"product_type": product.product_type})

    if payer is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sign in to purchase this item",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if subject_type == SubjectType.SUBSCRIPTION:
        cycle = billing_cycle or "monthly"
        total_days_in_cycle(cycle)
        plan = await memberships.get_plan(db, subject_id)
        if plan is None:
            raise _not_found(f"Membership plan '{subject_id}' not found")
        return PricedSubject(plan.period_price_cents(cycle), f"{plan.name} ({cycle})", {})

    if subject_type == SubjectType.MEMBERSHIP_UPGRADE:
        cycle = billing_cycle or "monthly"
        quote = await memberships.quote_for_user(db, payer.uuid, subject_id, cycle, now)
        if quote.is_downgrade:
            raise _bad_request("Downgrades are free and take effect at renewal; schedule one instead")
        return PricedSubject(
            quote.upgrade_cost_cents,
            f"Upgrade to {quote.target_plan_id} ({cycle})",
            {
                "current_plan_id": quote.current_plan_id,
                "credit_cents": quote.credit_cents,
                "days_remaining": quote.days_remaining,
            },
        )

    if subject_type == SubjectType.AD_CAMPAIGN:
        campaign = await db.get(AdCampaign, subject_id)
        if campaign is None or campaign.owner_id != payer.uuid:
            raise _not_found("Ad campaign not found")
        if campaign.status != "draft":
            raise _bad_request("Ad campaign has already been paid for")
        return PricedSubject(campaign.price_cents, f"Ad campaign: {campaign.title}", {})

    raise _bad_request(f"Unsupported subject type '{subject_type}'")


async def _find_by_idempotency_key(
    db: AsyncSession, payer_id: Optional[str], guest_email: Optional[str], key: str
) -> Optional[Transaction]:
    query = select(Transaction).where(Transaction.idempotency_key == key)
    if payer_id is not None:
        query = query.where(Transaction.payer_id == payer_id)
    else:
        query = query.where(Transaction.payer_id.is_(None), Transaction.guest_email == guest_email)
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalars().first()


async def _reload(db: AsyncSession, transaction_id: str) -> Transaction:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.uuid == transaction_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _transition(db: AsyncSession, transaction_id: str, target: str, **values) -> bool:
    """Move a transaction to ``target`` if, and only if, it is currently in
    one of the states that may precede it."""
    result = await db.execute(
        update(Transaction)
        .where(
            Transaction.uuid == transaction_id,
            Transaction.state.in_(TransactionState.ALLOWED_FROM[target]),
        )
        .values(state=target, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _fail(db: AsyncSession, transaction_id: str, reason: str) -> Transaction:
    await _transition(db, transaction_id, TransactionState.FAILED, failure_reason=reason[:2000])
    await db.commit()
    return await _reload(db, transaction_id)


async def initiate_checkout(
    db: AsyncSession,
    payer: Optional[User],
    subject_type: str,
    subject_id: str,
    gateway: str,
    billing_cycle: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    guest_email: Optional[str] = None,
    expected_amount_cents: Optional[int] = None,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """Open a transaction and hand it to the chosen gateway.

    Card returns a client secret, redirect gateways a redirect URL, and the
    wallet settles immediately. Repeating a call with the same idempotency
    key returns the transaction created the first time.
    """
    now = now or datetime.utcnow()

    if subject_type not in SubjectType.ALL:
        raise _bad_request(f"Unsupported subject type '{subject_type}'")
    if gateway not in GATEWAYS:
        raise _bad_request(f"Unsupported gateway '{gateway}'. Choose one of: {', '.join(GATEWAYS)}")

    if payer is None:
        if subject_type != SubjectType.ORDER:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Sign in to purchase this item",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not guest_email:
            raise _bad_request("An e-mail address is required for guest checkout")
        if gateway == "wallet":
            raise _bad_request("Guests cannot pay from a wallet")

    payer_id = payer.uuid if payer else None

    if idempotency_key:
        existing = await _find_by_idempotency_key(db, payer_id, guest_email, idempotency_key)
        if existing is not None:
            logger.info(f"Checkout replay for idempotency key {idempotency_key} -> {existing.uuid}")
            return CheckoutResult(existing, already_processed=existing.is_terminal)

    priced = await _price_subject(db, subject_type, subject_id, payer, billing_cycle, now)

    if expected_amount_cents is not None:
        if abs(expected_amount_cents - priced.amount_cents) > to_cents(settings.QUOTE_TOLERANCE):
            raise StaleQuote()

    if priced.amount_cents == 0:
        if payer is None:
            raise _bad_request("Sign in to get free items")
        # Nothing to collect: settle through the wallet without a provider
        gateway = "wallet"

    cycle = None
    if subject_type in (SubjectType.SUBSCRIPTION, SubjectType.MEMBERSHIP_UPGRADE):
        cycle = billing_cycle or "monthly"

    transaction = Transaction(
        subject_type=subject_type,
        subject_id=subject_id,
        billing_cycle=cycle,
        payer_id=payer_id,
        guest_email=guest_email if payer is None else None,
        amount_cents=priced.amount_cents,
        currency=settings.DEFAULT_CURRENCY,
        gateway=gateway,
        state=TransactionState.CREATED,
        idempotency_key=idempotency_key,
        extra=priced.extra or None,
    )
    db.add(transaction)
    try:
        await db.flush()
    except IntegrityError:
        # Lost a race with an identical request
        await db.rollback()
        existing = await _find_by_idempotency_key(db, payer_id, guest_email, idempotency_key or "")
        if existing is None:
            raise
        return CheckoutResult(existing, already_processed=existing.is_terminal)

    transaction_id = transaction.uuid
    adapter = get_gateway(gateway, db)
    metadata = {
        "transaction_id": transaction_id,
        "subject_type": subject_type,
        "subject_id": subject_id,
        "description": priced.description,
        "payer_id": payer.uuid if payer else "",
        "email": payer.email if payer else guest_email,
        "name": payer.name if payer else "",
    }

    try:
        if gateway == "card" and payer is not None:
            metadata["stripe_customer_id"] = await ensure_customer(db, payer) or ""
        initiated = await adapter.initiate(priced.amount_cents, transaction.currency, metadata)
    except InsufficientBalance:
        # Nothing was sent anywhere; leave no trace of the attempt
        await db.rollback()
        raise
    except ProviderTimeout as e:
        await db.commit()
        await _fail(db, transaction_id, str(e))
        logger.warning(f"Gateway {gateway} timed out initiating {transaction_id}")
        raise GatewayTimeout()
    except ProviderError as e:
        await db.commit()
        await _fail(db, transaction_id, str(e))
        logger.warning(f"Gateway {gateway} failed to initiate {transaction_id}: {e}")
        raise GatewayError()

    transaction.external_ref = initiated.external_ref
    transaction.client_secret = initiated.client_secret
    transaction.redirect_url = initiated.redirect_url
    if initiated.provider_currency:
        transaction.extra = {
            **(transaction.extra or {}),
            "provider_amount_cents": initiated.provider_amount_cents,
            "provider_currency": initiated.provider_currency,
        }
    transaction.state = TransactionState.PENDING_GATEWAY
    await db.commit()

    logger.info(
        f"Transaction {transaction_id} pending at {gateway}: {subject_type} {subject_id}, "
        f"{transaction.amount_cents} cents"
    )

    if adapter.synchronous:
        return await confirm_transaction(db, transaction_id=transaction_id, actor=payer, now=now)
    return CheckoutResult(transaction)


async def _load_for_confirm(
    db: AsyncSession,
    transaction_id: Optional[str],
    external_ref: Optional[str],
    gateway: Optional[str],
) -> Transaction:
    query = select(Transaction).execution_options(populate_existing=True)
    if transaction_id:
        query = query.where(Transaction.uuid == transaction_id)
    elif external_ref:
        query = query.where(Transaction.external_ref == external_ref)
        if gateway:
            query = query.where(Transaction.gateway == gateway)
    else:
        raise _bad_request("Provide a transaction id or an external reference")

    transaction = (await db.execute(query)).scalars().first()
    if transaction is None:
        raise _not_found("Transaction not found")
    return transaction


def _check_owner(transaction: Transaction, actor: Optional[User]) -> None:
    if transaction.payer_id is None:
        return
    if actor is None or (actor.uuid != transaction.payer_id and actor.user_role != "admin"):
        raise _not_found("Transaction not found")


async def _settle_subject(db: AsyncSession, transaction: Transaction, now: datetime) -> None:
    """Grant what was paid for. Runs inside the winning confirm's database
    transaction."""
    if transaction.subject_type == SubjectType.ORDER:
        product = await db.get(Product, transaction.subject_id)
        db.add(Purchase(
            product_type=product.product_type,
            transaction_id=transaction.uuid,
            user_id=transaction.payer_id,
            guest_email=transaction.guest_email,
            product_id=product.uuid,
            purchased_at=now,
        ))
        if product.is_free:
            await commission.record_free_download(db, product)
        await commission.on_sale_completed(db, transaction)

    elif transaction.subject_type in (SubjectType.SUBSCRIPTION, SubjectType.MEMBERSHIP_UPGRADE):
        await memberships.activate_membership(
            db,
            transaction.payer_id,
            transaction.subject_id,
            transaction.billing_cycle or "monthly",
            transaction.uuid,
            now,
        )

    elif transaction.subject_type == SubjectType.AD_CAMPAIGN:
        campaign = await db.get(AdCampaign, transaction.subject_id)
        activated = await db.execute(
            update(AdCampaign)
            .where(AdCampaign.uuid == transaction.subject_id, AdCampaign.status == "draft")
            .values(
                status="active",
                transaction_id=transaction.uuid,
                starts_at=now,
                ends_at=now + timedelta(days=campaign.duration_days),
            )
            .execution_options(synchronize_session=False)
        )
        if activated.rowcount != 1:
            logger.error(f"Ad campaign {transaction.subject_id} was not in draft when payment {transaction.uuid} settled")

    await db.flush()


async def _revalidate_quote(db: AsyncSession, transaction: Transaction, adapter, now: datetime) -> None:
    """Refuse to settle an upgrade whose price no longer matches a fresh quote."""
    fresh = await memberships.quote_for_user(
        db, transaction.payer_id, transaction.subject_id, transaction.billing_cycle or "monthly", now
    )
    drift = abs(fresh.upgrade_cost_cents - transaction.amount_cents)
    if not fresh.is_downgrade and drift <= to_cents(settings.QUOTE_TOLERANCE):
        return

    logger.warning(
        f"Stale upgrade quote on {transaction.uuid}: charged {transaction.amount_cents}, "
        f"fresh quote {fresh.upgrade_cost_cents}"
    )
    try:
        outcome = await adapter.cancel(transaction.external_ref)
        if outcome != "cancelled":
            logger.error(f"Stale upgrade {transaction.uuid} already settled at {transaction.gateway}; refund required")
    except ProviderError as e:
        logger.error(f"Could not cancel stale upgrade {transaction.uuid} at {transaction.gateway}: {e}")

    await _fail(db, transaction.uuid, f"Stale quote: charged {transaction.amount_cents}, fresh {fresh.upgrade_cost_cents}")
    raise StaleQuote()


def _backoff_seconds(attempts: int) -> int:
    delay = settings.CONFIRM_BACKOFF_BASE_SECONDS * (2 ** max(attempts - 1, 0))
    return min(delay, settings.CONFIRM_BACKOFF_MAX_SECONDS)


async def _complete(db: AsyncSession, transaction: Transaction, now: datetime) -> CheckoutResult:
    await _settle_subject(db, transaction, now)
    await db.commit()
    logger.info(f"Transaction {transaction.uuid} succeeded via {transaction.gateway}")
    return CheckoutResult(await _reload(db, transaction.uuid))


async def _cancel_at_provider(adapter, external_ref: str) -> Optional[ConfirmResult]:
    """Cancel a payment at the provider. Returns the provider's own outcome
    when the payment had already finished there, ``None`` once cancelled."""
    if await adapter.cancel(external_ref) == CancelStatus.ALREADY_TERMINAL:
        return await adapter.confirm(external_ref)
    return None


async def _check_late_success(transaction: Transaction, adapter) -> None:
    """A provider can still complete a payment after it was failed or
    cancelled here; that money is owed back to the payer."""
    if adapter.synchronous or not transaction.external_ref:
        return
    try:
        outcome = await _cancel_at_provider(adapter, transaction.external_ref)
    except ProviderError as e:
        logger.warning(f"Could not check {transaction.state} transaction {transaction.uuid} at {transaction.gateway}: {e}")
        return
    if outcome is not None and outcome.succeeded:
        logger.error(
            f"Transaction {transaction.uuid} is {transaction.state} but {transaction.gateway} reports "
            f"{transaction.external_ref} paid; refund required"
        )


async def _claim_success(db: AsyncSession, transaction: Transaction, now: datetime) -> CheckoutResult:
    tx_id = transaction.uuid
    if not await _transition(db, tx_id, TransactionState.SUCCEEDED, settled_at=now):
        await db.rollback()
        return CheckoutResult(await _reload(db, tx_id), already_processed=True)
    return await _complete(db, transaction, now)


async def confirm_transaction(
    db: AsyncSession,
    transaction_id: Optional[str] = None,
    external_ref: Optional[str] = None,
    gateway: Optional[str] = None,
    actor: Optional[User] = None,
    system: bool = False,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """Ask the gateway where a payment is and advance the transaction.

    Safe to call any number of times, concurrently: a transaction that is
    already terminal is returned unchanged with ``already_processed`` set.
    ``system`` callers (webhooks, the sweep job) skip the ownership check.
    """
    now = now or datetime.utcnow()
    transaction = await _load_for_confirm(db, transaction_id, external_ref, gateway)
    if not system:
        _check_owner(transaction, actor)

    if transaction.is_terminal:
        if system and transaction.state != TransactionState.SUCCEEDED:
            await _check_late_success(transaction, get_gateway(transaction.gateway, db))
        return CheckoutResult(transaction, already_processed=True)
    if transaction.state == TransactionState.CREATED or not transaction.external_ref:
        raise InvalidStateTransition("Transaction was never sent to a payment gateway")

    tx_id = transaction.uuid
    adapter = get_gateway(transaction.gateway, db)

    if transaction.subject_type == SubjectType.MEMBERSHIP_UPGRADE:
        await _revalidate_quote(db, transaction, adapter, now)

    if adapter.synchronous:
        # Claim first so that only one caller ever performs the ledger debit
        if not await _transition(db, tx_id, TransactionState.SUCCEEDED, settled_at=now):
            await db.rollback()
            return CheckoutResult(await _reload(db, tx_id), already_processed=True)
        outcome = await adapter.confirm(transaction.external_ref)
        if outcome.succeeded:
            return await _complete(db, transaction, now)
        await db.rollback()
        return CheckoutResult(await _fail(db, tx_id, outcome.failure_reason or "Payment declined"))

    try:
        outcome = await adapter.confirm(transaction.external_ref)
    except ProviderError as e:
        logger.warning(f"Confirm of {tx_id} at {transaction.gateway} failed, will retry: {e}")
        outcome = None

    if outcome is not None and outcome.succeeded:
        return await _claim_success(db, transaction, now)

    if outcome is not None and outcome.failed:
        logger.info(f"Transaction {tx_id} failed at {transaction.gateway}: {outcome.failure_reason}")
        return CheckoutResult(await _fail(db, tx_id, outcome.failure_reason or "Payment failed"))

    # Still pending
    deadline = transaction.created_at + timedelta(minutes=adapter.confirm_timeout_minutes)
    if now >= deadline:
        # Stop the payment at the provider before giving up on it here
        try:
            late = await _cancel_at_provider(adapter, transaction.external_ref)
        except ProviderError as e:
            logger.warning(f"Could not cancel timed-out transaction {tx_id} at {transaction.gateway}, will retry: {e}")
        else:
            if late is not None and late.succeeded:
                logger.info(f"Transaction {tx_id} completed at {transaction.gateway} as it timed out")
                return await _claim_success(db, transaction, now)
            logger.warning(f"Transaction {tx_id} timed out at {transaction.gateway}")
            reason = late.failure_reason if late is not None and late.failed else None
            return CheckoutResult(await _fail(db, tx_id, reason or TIMEOUT_REASON))

    await db.execute(
        update(Transaction)
        .where(Transaction.uuid == tx_id, Transaction.state == TransactionState.PENDING_GATEWAY)
        .values(confirm_attempts=Transaction.confirm_attempts + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    transaction = await _reload(db, tx_id)
    return CheckoutResult(transaction, retry_after_seconds=_backoff_seconds(transaction.confirm_attempts))


async def cancel_transaction(db: AsyncSession, transaction_id: str, actor: User) -> Transaction:
    """Abandon a payment before it settles. A settled payment is final."""
    transaction = await _load_for_confirm(db, transaction_id, None, None)
    _check_owner(transaction, actor)

    if transaction.state == TransactionState.CANCELLED:
        return transaction
    if transaction.is_terminal:
        logger.error(f"Refused to cancel transaction {transaction_id} in state {transaction.state}")
        raise InvalidStateTransition(f"Transaction is already {transaction.state} and cannot be cancelled")

    if transaction.external_ref:
        adapter = get_gateway(transaction.gateway, db)
        try:
            outcome = await adapter.cancel(transaction.external_ref)
        except ProviderError as e:
            logger.warning(f"Cancel of {transaction_id} at {transaction.gateway} failed: {e}")
            raise GatewayError()

        if outcome == "already_terminal":
            # The provider finished first; record what actually happened
            result = await confirm_transaction(db, transaction_id=transaction_id, system=True)
            if result.transaction.state == TransactionState.SUCCEEDED:
                logger.error(f"Refused to cancel settled transaction {transaction_id}")
                raise InvalidStateTransition("Transaction is already succeeded and cannot be cancelled")
            return result.transaction

    if not await _transition(db, transaction_id, TransactionState.CANCELLED):
        await db.rollback()
        transaction = await _reload(db, transaction_id)
        if transaction.state != TransactionState.CANCELLED:
            logger.error(f"Refused to cancel transaction {transaction_id} in state {transaction.state}")
            raise InvalidStateTransition(f"Transaction is already {transaction.state} and cannot be cancelled")
        return transaction

    await db.commit()
    logger.info(f"Transaction {transaction_id} cancelled by {actor.uuid}")
    return await _reload(db, transaction_id)


async def get_transaction(db: AsyncSession, transaction_id: str, actor: Optional[User]) -> Transaction:
    transaction = await _load_for_confirm(db, transaction_id, None, None)
    _check_owner(transaction, actor)
    return transaction


async def expire_stale_transactions(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Re-confirm every transaction waiting on a redirect or card gateway.

    Confirmation fails the ones past their gateway timeout. Returns how many
    reached a terminal state during this sweep.
    """
    now = now or datetime.utcnow()
    finished = 0

    # A wallet payment left pending means the process died between initiate
    # and confirm; never debit it behind the payer's back
    abandoned = await db.execute(
        select(Transaction.uuid).where(
            Transaction.state == TransactionState.PENDING_GATEWAY,
            Transaction.gateway == "wallet",
            Transaction.created_at < now - timedelta(minutes=5),
        )
    )
    for tx_id in abandoned.scalars().all():
        await _fail(db, tx_id, TIMEOUT_REASON)
        finished += 1

    result = await db.execute(
        select(Transaction.uuid).where(
            Transaction.state == TransactionState.PENDING_GATEWAY,
            Transaction.gateway != "wallet",
        )
    )
    for tx_id in result.scalars().all():
        try:
            outcome = await confirm_transaction(db, transaction_id=tx_id, system=True, now=now)
        except HTTPException as e:
            logger.warning(f"Sweep could not confirm transaction {tx_id}: {e.detail}")
            continue
        if outcome.transaction.is_terminal:
            finished += 1
    logger.info(f"Stale transaction sweep finished {finished} transactions")
    return finished
