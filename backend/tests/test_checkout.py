"""Tests for the checkout orchestrator and transaction state machine."""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
import stripe
from fastapi import HTTPException
from sqlalchemy import func, select

from app.errors import GatewayError, InsufficientBalance, InvalidStateTransition, StaleQuote
from app.models.ad_campaign import AdCampaign
from app.models.balance import LedgerEntry
from app.models.earning import EarningsEvent, ProductDownloadStat
from app.models.product import Product
from app.models.purchase import Purchase
from app.models.transaction import Transaction, TransactionState
from app.models.user import User
from app.services import checkout, ledger, memberships


def _intent(status="requires_payment_method", **kwargs):
    return MagicMock(status=status, last_payment_error=None, **kwargs)


def _stripe_created(intent_id="pi_test123"):
    return MagicMock(id=intent_id, client_secret=f"{intent_id}_secret")


async def _count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar()


# ── Wallet ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_wallet_order_settles_in_one_call(test_db, user, creator, creator_product, fund_wallet):
    user_id, creator_id, product_id = user.uuid, creator.uuid, creator_product.uuid
    await fund_wallet(user_id, 15000)

    result = await checkout.initiate_checkout(test_db, user, "order", product_id, "wallet")

    assert result.transaction.state == TransactionState.SUCCEEDED
    assert result.transaction.settled_at is not None
    assert (await ledger.get_wallet(test_db, user_id)).available_cents == 5000
    assert (await ledger.get_wallet(test_db, creator_id)).pending_cents == 6500

    purchase = (await test_db.execute(select(Purchase))).scalar_one()
    assert purchase.user_id == user_id
    assert purchase.transaction_id == result.transaction.uuid


@pytest.mark.asyncio
async def test_wallet_insufficient_balance_leaves_no_transaction(test_db, user, fund_wallet):
    user_id = user.uuid
    await fund_wallet(user_id, 3000)
    product = Product(name="Bundle", price_cents=4500, creator_id=None)
    test_db.add(product)
    await test_db.commit()
    product_id = product.uuid

    with pytest.raises(InsufficientBalance):
        await checkout.initiate_checkout(test_db, user, "order", product_id, "wallet")

    assert await _count(test_db, Transaction) == 0
    assert (await ledger.get_wallet(test_db, user_id)).available_cents == 3000


@pytest.mark.asyncio
async def test_free_product_settles_without_a_gateway(test_db, user, creator):
    user_id = user.uuid
    product = Product(name="Free Guide", price_cents=0, product_type="product", creator_id=creator.uuid)
    test_db.add(product)
    await test_db.commit()
    product_id = product.uuid

    result = await checkout.initiate_checkout(test_db, user, "order", product_id, "card")

    assert result.transaction.gateway == "wallet"
    assert result.transaction.state == TransactionState.SUCCEEDED
    stat = await test_db.get(ProductDownloadStat, product_id, populate_existing=True)
    assert stat.free_downloads == 1
    assert await _count(test_db, EarningsEvent) == 0
    assert (await ledger.get_wallet(test_db, user_id)).available_cents == 0


@pytest.mark.asyncio
async def test_ad_campaign_activates_on_payment(test_db, user, fund_wallet):
    await fund_wallet(user.uuid, 2000)
    campaign = AdCampaign(title="Spring promo", price_cents=1500, duration_days=7, owner_id=user.uuid)
    test_db.add(campaign)
    await test_db.commit()

    result = await checkout.initiate_checkout(test_db, user, "ad_campaign", campaign.uuid, "wallet")

    assert result.transaction.state == TransactionState.SUCCEEDED
    await test_db.refresh(campaign)
    assert campaign.status == "active"
    assert campaign.transaction_id == result.transaction.uuid
    assert campaign.ends_at - campaign.starts_at == timedelta(days=7)


@pytest.mark.asyncio
async def test_subscription_purchase_activates_plan(test_db, user, plans, fund_wallet):
    user_id = user.uuid
    await fund_wallet(user_id, 5000)

    result = await checkout.initiate_checkout(test_db, user, "subscription", "pro", "wallet", billing_cycle="monthly")

    assert result.transaction.amount_cents == 5000
    subscription = await memberships.get_active_subscription(test_db, user_id)
    assert subscription.plan_id == "pro"
    assert subscription.transaction_id == result.transaction.uuid


@pytest.mark.asyncio
async def test_concurrent_confirms_debit_the_wallet_once(file_sessions):
    """Two confirms of one pending wallet payment race on separate sessions:
    exactly one settles it."""
    async with file_sessions() as setup:
        buyer = User(name="Buyer", email="b@example.com", user_role="user", status="active")
        seller = User(name="Seller", email="s@example.com", user_role="creator", status="active")
        setup.add_all([buyer, seller])
        await setup.commit()
        product = Product(name="Trading Course", price_cents=10000, product_type="course", creator_id=seller.uuid)
        setup.add(product)
        await setup.commit()
        await ledger.credit(setup, buyer.uuid, 15000, "Top-up")
        tx_id = str(uuid4())
        setup.add(Transaction(
            uuid=tx_id,
            subject_type="order",
            subject_id=product.uuid,
            payer_id=buyer.uuid,
            amount_cents=10000,
            gateway="wallet",
            state=TransactionState.PENDING_GATEWAY,
            external_ref=f"wallet_{tx_id}",
        ))
        await setup.commit()
        buyer_id = buyer.uuid

    async def attempt():
        async with file_sessions() as session:
            return await checkout.confirm_transaction(session, transaction_id=tx_id, system=True)

    results = await asyncio.gather(attempt(), attempt())

    assert sorted(r.already_processed for r in results) == [False, True]
    async with file_sessions() as check:
        transaction = await check.get(Transaction, tx_id)
        assert transaction.state == TransactionState.SUCCEEDED
        assert await _count(check, Purchase) == 1
        assert (await ledger.get_wallet(check, buyer_id)).available_cents == 5000
        debits = await check.execute(
            select(func.count()).select_from(LedgerEntry).where(
                LedgerEntry.holder_id == buyer_id, LedgerEntry.entry_type == "debit"
            )
        )
        assert debits.scalar() == 1


# ── Card ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_card_checkout_returns_client_secret(test_db, user, creator_product):
    with patch("stripe.Customer.create") as mock_customer, \
         patch("stripe.PaymentIntent.create") as mock_create:
        mock_customer.return_value = MagicMock(id="cus_test123")
        mock_create.return_value = _stripe_created()

        result = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")

    transaction = result.transaction
    assert transaction.state == TransactionState.PENDING_GATEWAY
    assert transaction.external_ref == "pi_test123"
    assert transaction.client_secret == "pi_test123_secret"
    assert mock_create.call_args.kwargs["amount"] == 10000
    assert mock_create.call_args.kwargs["customer"] == "cus_test123"
    assert mock_create.call_args.kwargs["idempotency_key"] == f"tx_{transaction.uuid}"


@pytest.mark.asyncio
async def test_card_confirm_settles_exactly_once(test_db, user, creator, creator_product):
    creator_id = creator.uuid
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")
    tx_id = started.transaction.uuid

    with patch("stripe.PaymentIntent.retrieve", return_value=_intent("succeeded")):
        first = await checkout.confirm_transaction(test_db, transaction_id=tx_id, actor=user)
        second = await checkout.confirm_transaction(test_db, external_ref="pi_test123", gateway="card", system=True)

    assert first.transaction.state == TransactionState.SUCCEEDED
    assert not first.already_processed
    assert second.already_processed
    assert await _count(test_db, Purchase) == 1
    assert await _count(test_db, EarningsEvent) == 1
    assert (await ledger.get_wallet(test_db, creator_id)).pending_cents == 6500


@pytest.mark.asyncio
async def test_card_still_pending_backs_off(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")
    tx_id = started.transaction.uuid

    with patch("stripe.PaymentIntent.retrieve", return_value=_intent("processing")):
        first = await checkout.confirm_transaction(test_db, transaction_id=tx_id, actor=user)
        second = await checkout.confirm_transaction(test_db, transaction_id=tx_id, actor=user)

    assert first.transaction.state == TransactionState.PENDING_GATEWAY
    assert first.retry_after_seconds == 2
    assert second.retry_after_seconds == 4
    assert second.transaction.confirm_attempts == 2


@pytest.mark.asyncio
async def test_card_decline_fails_transaction(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")

    declined = MagicMock(status="requires_payment_method", last_payment_error=MagicMock(message="Your card was declined."))
    with patch("stripe.PaymentIntent.retrieve", return_value=declined):
        result = await checkout.confirm_transaction(test_db, transaction_id=started.transaction.uuid, actor=user)

    assert result.transaction.state == TransactionState.FAILED
    assert result.transaction.failure_reason == "Your card was declined."
    assert await _count(test_db, Purchase) == 0


@pytest.mark.asyncio
async def test_pending_card_payment_times_out(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")

    later = datetime.utcnow() + timedelta(minutes=31)
    with patch("stripe.PaymentIntent.retrieve", return_value=_intent("requires_action")), \
         patch("stripe.PaymentIntent.cancel") as mock_cancel:
        result = await checkout.confirm_transaction(
            test_db, transaction_id=started.transaction.uuid, actor=user, now=later
        )

    assert result.transaction.state == TransactionState.FAILED
    assert result.transaction.failure_reason == checkout.TIMEOUT_REASON
    # The intent must not stay payable once the order is given up on
    mock_cancel.assert_called_once_with("pi_test123")


@pytest.mark.asyncio
async def test_payment_completed_at_timeout_is_settled(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")

    # Pending on the first look, captured by the time the cancel is attempted
    later = datetime.utcnow() + timedelta(minutes=31)
    retrieved = [_intent("requires_action"), _intent("succeeded"), _intent("succeeded")]
    with patch("stripe.PaymentIntent.retrieve", side_effect=retrieved), \
         patch("stripe.PaymentIntent.cancel") as mock_cancel:
        result = await checkout.confirm_transaction(
            test_db, transaction_id=started.transaction.uuid, actor=user, now=later
        )

    assert result.transaction.state == TransactionState.SUCCEEDED
    mock_cancel.assert_not_called()
    assert await _count(test_db, Purchase) == 1


@pytest.mark.asyncio
async def test_cancel_failure_at_timeout_keeps_waiting(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")

    later = datetime.utcnow() + timedelta(minutes=31)
    with patch("stripe.PaymentIntent.retrieve", return_value=_intent("requires_action")), \
         patch("stripe.PaymentIntent.cancel", side_effect=stripe.APIConnectionError("network down")):
        result = await checkout.confirm_transaction(
            test_db, transaction_id=started.transaction.uuid, actor=user, now=later
        )

    assert result.transaction.state == TransactionState.PENDING_GATEWAY
    assert result.retry_after_seconds is not None


@pytest.mark.asyncio
async def test_success_after_failure_is_flagged_for_refund(test_db, user, creator_product, caplog):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")
    tx_id = started.transaction.uuid

    declined = MagicMock(status="requires_payment_method", last_payment_error=MagicMock(message="Declined"))
    with patch("stripe.PaymentIntent.retrieve", return_value=declined):
        await checkout.confirm_transaction(test_db, transaction_id=tx_id, actor=user)

    with caplog.at_level("ERROR", logger="app.services.checkout"), \
         patch("stripe.PaymentIntent.retrieve", return_value=_intent("succeeded")):
        late = await checkout.confirm_transaction(test_db, external_ref="pi_test123", gateway="card", system=True)

    assert late.already_processed
    assert late.transaction.state == TransactionState.FAILED
    assert await _count(test_db, Purchase) == 0
    assert "refund required" in caplog.text


@pytest.mark.asyncio
async def test_idempotency_key_replays_the_same_transaction(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()) as mock_create:
        first = await checkout.initiate_checkout(
            test_db, user, "order", creator_product.uuid, "card", idempotency_key="click-1"
        )
        second = await checkout.initiate_checkout(
            test_db, user, "order", creator_product.uuid, "card", idempotency_key="click-1"
        )

    assert first.transaction.uuid == second.transaction.uuid
    assert mock_create.call_count == 1
    assert await _count(test_db, Transaction) == 1


@pytest.mark.asyncio
async def test_provider_error_fails_the_transaction(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", side_effect=stripe.StripeError("card network down")):
        with pytest.raises(GatewayError):
            await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")

    transaction = (await test_db.execute(
        select(Transaction).execution_options(populate_existing=True)
    )).scalar_one()
    assert transaction.state == TransactionState.FAILED
    assert "card network down" in transaction.failure_reason


@pytest.mark.asyncio
async def test_expected_amount_mismatch_is_a_stale_quote(test_db, user, creator_product):
    with pytest.raises(StaleQuote):
        await checkout.initiate_checkout(
            test_db, user, "order", creator_product.uuid, "card", expected_amount_cents=9000
        )
    assert await _count(test_db, Transaction) == 0


# ── Guests ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_guest_can_buy_with_card(test_db, creator_product):
    with patch("stripe.PaymentIntent.create", return_value=_stripe_created("pi_guest")) as mock_create:
        started = await checkout.initiate_checkout(
            test_db, None, "order", creator_product.uuid, "card", guest_email="guest@example.com"
        )
    assert mock_create.call_args.kwargs["customer"] is None

    with patch("stripe.PaymentIntent.retrieve", return_value=_intent("succeeded")):
        result = await checkout.confirm_transaction(test_db, transaction_id=started.transaction.uuid)

    assert result.transaction.state == TransactionState.SUCCEEDED
    purchase = (await test_db.execute(select(Purchase))).scalar_one()
    assert purchase.user_id is None
    assert purchase.guest_email == "guest@example.com"


@pytest.mark.asyncio
async def test_guest_needs_an_email(test_db, creator_product):
    with pytest.raises(HTTPException) as exc:
        await checkout.initiate_checkout(test_db, None, "order", creator_product.uuid, "card")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_guest_cannot_buy_memberships(test_db, plans):
    with pytest.raises(HTTPException) as exc:
        await checkout.initiate_checkout(
            test_db, None, "subscription", "pro", "card", guest_email="guest@example.com"
        )
    assert exc.value.status_code == 401


# ── Cancellation ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_pending_card_payment(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")
    tx_id = started.transaction.uuid

    with patch("stripe.PaymentIntent.retrieve", return_value=_intent()), \
         patch("stripe.PaymentIntent.cancel") as mock_cancel:
        cancelled = await checkout.cancel_transaction(test_db, tx_id, user)
        again = await checkout.cancel_transaction(test_db, tx_id, user)

    assert cancelled.state == TransactionState.CANCELLED
    assert again.state == TransactionState.CANCELLED
    mock_cancel.assert_called_once_with("pi_test123")


@pytest.mark.asyncio
async def test_cancel_after_success_is_refused(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")
    tx_id = started.transaction.uuid

    with patch("stripe.PaymentIntent.retrieve", return_value=_intent("succeeded")):
        await checkout.confirm_transaction(test_db, transaction_id=tx_id, actor=user)
        with pytest.raises(InvalidStateTransition):
            await checkout.cancel_transaction(test_db, tx_id, user)


@pytest.mark.asyncio
async def test_cancel_racing_a_provider_success_records_the_success(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")
    tx_id = started.transaction.uuid

    # Stripe already captured the payment when the cancel arrives
    with patch("stripe.PaymentIntent.retrieve", return_value=_intent("succeeded")):
        with pytest.raises(InvalidStateTransition):
            await checkout.cancel_transaction(test_db, tx_id, user)

    transaction = await checkout.get_transaction(test_db, tx_id, user)
    assert transaction.state == TransactionState.SUCCEEDED
    assert await _count(test_db, Purchase) == 1


# ── Membership upgrades ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_wallet_upgrade_charges_prorated_price(test_db, user, plans, subscribe, fund_wallet):
    user_id = user.uuid
    await subscribe(user_id, "creator", days_left=15)
    await fund_wallet(user_id, 5000)

    result = await checkout.initiate_checkout(
        test_db, user, "membership_upgrade", "pro", "wallet", billing_cycle="monthly"
    )

    assert result.transaction.amount_cents == 4000
    assert result.transaction.state == TransactionState.SUCCEEDED
    assert (await ledger.get_wallet(test_db, user_id)).available_cents == 1000
    subscription = await memberships.get_active_subscription(test_db, user_id)
    assert subscription.plan_id == "pro"


@pytest.mark.asyncio
async def test_downgrade_through_checkout_is_refused(test_db, user, plans, subscribe):
    await subscribe(user.uuid, "pro", days_left=15)

    with pytest.raises(HTTPException) as exc:
        await checkout.initiate_checkout(test_db, user, "membership_upgrade", "creator", "card")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_upgrade_is_repriced_before_settlement(test_db, user, plans, subscribe):
    await subscribe(user.uuid, "creator", days_left=15)

    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", return_value=_stripe_created()):
        started = await checkout.initiate_checkout(
            test_db, user, "membership_upgrade", "pro", "card", billing_cycle="monthly"
        )
    assert started.transaction.amount_cents == 4000
    tx_id = started.transaction.uuid

    # Ten days later the credit is much smaller than when the price was quoted
    later = datetime.utcnow() + timedelta(days=10)
    with patch("stripe.PaymentIntent.retrieve", return_value=_intent()), \
         patch("stripe.PaymentIntent.cancel") as mock_cancel:
        with pytest.raises(StaleQuote):
            await checkout.confirm_transaction(test_db, transaction_id=tx_id, actor=user, now=later)

    mock_cancel.assert_called_once()
    transaction = await checkout.get_transaction(test_db, tx_id, user)
    assert transaction.state == TransactionState.FAILED
    subscription = await memberships.get_active_subscription(test_db, user.uuid)
    assert subscription.plan_id == "creator"


# ── Sweep ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sweep_settles_and_expires_pending_payments(test_db, user, creator_product):
    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_1")), \
         patch("stripe.PaymentIntent.create", side_effect=[_stripe_created("pi_a"), _stripe_created("pi_b")]):
        a = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")
        b = await checkout.initiate_checkout(test_db, user, "order", creator_product.uuid, "card")
    a_id, b_id = a.transaction.uuid, b.transaction.uuid

    def retrieve(ref):
        return _intent("succeeded") if ref == "pi_a" else _intent("processing")

    later = datetime.utcnow() + timedelta(hours=1)
    with patch("stripe.PaymentIntent.retrieve", side_effect=retrieve), \
         patch("stripe.PaymentIntent.cancel") as mock_cancel:
        finished = await checkout.expire_stale_transactions(test_db, now=later)

    assert finished == 2
    assert (await checkout.get_transaction(test_db, a_id, user)).state == TransactionState.SUCCEEDED
    assert (await checkout.get_transaction(test_db, b_id, user)).state == TransactionState.FAILED
    mock_cancel.assert_called_once_with("pi_b")
