"""Payments router: checkout, confirmation, cancellation and gateway webhooks."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_active_user, get_optional_user
from app.config import settings
from app.database import get_db
from app.errors import InvalidWebhookSignature
from app.models.user import User
from app.rate_limit import limiter
from app.schemas.payments import CheckoutRequest, CheckoutResponse, ConfirmRequest, TransactionResponse
from app.services import checkout
from app.services.gateways import get_gateway
from app.services.money import to_cents

logger = logging.getLogger(__name__)

router = APIRouter()


def _response(result: checkout.CheckoutResult) -> CheckoutResponse:
    publishable_key = settings.STRIPE_PUBLISHABLE_KEY if result.transaction.gateway == "card" else None
    return CheckoutResponse(
        transaction=TransactionResponse.from_transaction(result.transaction, publishable_key),
        already_processed=result.already_processed,
        retry_after_seconds=result.retry_after_seconds,
    )


@router.post("/api/payments/checkout", response_model=CheckoutResponse)
@limiter.limit(settings.CHECKOUT_RATE_LIMIT)
async def start_checkout(
    request: Request,
    request_data: CheckoutRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Open a transaction for a product, membership, upgrade or ad campaign.

    - Card payments return a client secret + publishable key
    - Redirect gateways (PayPal, VodaPay, DodoPay) return a redirect URL
    - Wallet payments settle immediately
    - Guests may buy products by passing ``guest_email``
    """
    expected = to_cents(request_data.expected_amount) if request_data.expected_amount is not None else None
    result = await checkout.initiate_checkout(
        db,
        current_user,
        request_data.subject_type,
        request_data.subject_id,
        request_data.gateway,
        billing_cycle=request_data.billing_cycle,
        idempotency_key=request_data.idempotency_key,
        guest_email=request_data.guest_email,
        expected_amount_cents=expected,
    )
    return _response(result)


@router.post("/api/payments/confirm", response_model=CheckoutResponse)
async def confirm_payment(
    request_data: ConfirmRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Ask the gateway where a payment stands and settle it if it succeeded.

    Safe to call repeatedly; when still pending the response carries
    ``retry_after_seconds``.
    """
    result = await checkout.confirm_transaction(
        db,
        transaction_id=request_data.transaction_id,
        external_ref=request_data.external_ref,
        gateway=request_data.gateway,
        actor=current_user,
    )
    return _response(result)


@router.post("/api/payments/{transaction_id}/cancel", response_model=TransactionResponse)
async def cancel_payment(
    transaction_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Abandon a payment that has not settled."""
    transaction = await checkout.cancel_transaction(db, transaction_id, current_user)
    return TransactionResponse.from_transaction(transaction)


@router.get("/api/payments/{transaction_id}", response_model=TransactionResponse)
async def get_payment(
    transaction_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    transaction = await checkout.get_transaction(db, transaction_id, current_user)
    return TransactionResponse.from_transaction(transaction)


@router.get("/api/payments/paypal/return", response_model=CheckoutResponse)
async def paypal_return(
    token: str = Query(..., description="PayPal order id"),
    db: AsyncSession = Depends(get_db)
):
    """PayPal sends the buyer back here after approval; capture and settle."""
    result = await checkout.confirm_transaction(db, external_ref=token, gateway="paypal", system=True)
    return _response(result)


async def _handle_webhook(gateway: str, request: Request, db: AsyncSession) -> dict:
    """Verify a provider callback, then re-confirm the transaction it names.

    The webhook body is only trusted to say *which* payment changed; the
    outcome always comes from asking the provider.
    """
    payload = await request.body()
    adapter = get_gateway(gateway, db)
    try:
        external_ref = await adapter.parse_webhook(payload, request.headers)
    except InvalidWebhookSignature as e:
        logger.warning(f"Rejected {gateway} webhook: {e.detail}")
        raise

    if not external_ref:
        return {"status": "ignored"}

    try:
        result = await checkout.confirm_transaction(db, external_ref=external_ref, gateway=gateway, system=True)
    except HTTPException as e:
        if e.status_code == status.HTTP_404_NOT_FOUND:
            logger.info(f"{gateway} webhook for unknown payment {external_ref}")
            return {"status": "ignored"}
        raise

    if result.already_processed:
        return {"status": "already_processed"}
    return {"status": result.transaction.state}


@router.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Handle Stripe webhook events.

    - Verifies webhook signature
    - Re-confirms payment_intent.* events against Stripe
    """
    return await _handle_webhook("card", request, db)


@router.post("/api/webhooks/vodapay")
async def vodapay_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    return await _handle_webhook("vodapay", request, db)


@router.post("/api/webhooks/dodopay")
async def dodopay_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    return await _handle_webhook("dodopay", request, db)
