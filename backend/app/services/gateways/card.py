"""Card payments through Stripe PaymentIntents."""
import logging
from typing import Mapping, Optional

import stripe

from app.config import settings
from app.errors import InvalidWebhookSignature
from app.services.gateways.base import (
    CancelStatus, ConfirmResult, ConfirmStatus, GatewayAdapter, InitiateResult, ProviderError,
)

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY

# Stripe webhook events that move a payment intent somewhere we care about
PAYMENT_EVENTS = frozenset({
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
})


class CardGateway(GatewayAdapter):
    """The client confirms the intent with Stripe.js (3-D Secure included)
    using the client secret; we only create, inspect and cancel it."""

    name = "card"
    confirm_timeout_minutes = settings.CARD_CONFIRM_TIMEOUT_MINUTES

    async def initiate(self, amount_cents: int, currency: str, metadata: Mapping[str, str]) -> InitiateResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                customer=metadata.get("stripe_customer_id") or None,
                metadata=dict(metadata),
                idempotency_key=f"tx_{metadata['transaction_id']}",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent create failed: {e}")
            raise ProviderError(str(e)) from e

        return InitiateResult(external_ref=intent.id, client_secret=intent.client_secret)

    async def confirm(self, external_ref: str) -> ConfirmResult:
        try:
            intent = stripe.PaymentIntent.retrieve(external_ref)
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent retrieve failed for {external_ref}: {e}")
            raise ProviderError(str(e)) from e

        if intent.status == "succeeded":
            return ConfirmResult(ConfirmStatus.SUCCEEDED)
        if intent.status == "canceled":
            return ConfirmResult(ConfirmStatus.FAILED, "Payment intent was canceled")

        last_error = getattr(intent, "last_payment_error", None)
        if intent.status == "requires_payment_method" and last_error:
            return ConfirmResult(ConfirmStatus.FAILED, getattr(last_error, "message", None) or "Card declined")

        return ConfirmResult(ConfirmStatus.STILL_PENDING)

    async def cancel(self, external_ref: str) -> str:
        try:
            intent = stripe.PaymentIntent.retrieve(external_ref)
            if intent.status in ("succeeded", "canceled"):
                return CancelStatus.ALREADY_TERMINAL
            stripe.PaymentIntent.cancel(external_ref)
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent cancel failed for {external_ref}: {e}")
            raise ProviderError(str(e)) from e
        return CancelStatus.CANCELLED

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> Optional[str]:
        sig_header = headers.get("stripe-signature")
        if not sig_header:
            raise InvalidWebhookSignature("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
        except ValueError:
            raise InvalidWebhookSignature("Invalid payload")
        except stripe.SignatureVerificationError:
            raise InvalidWebhookSignature()

        if event["type"] not in PAYMENT_EVENTS:
            return None
        return event["data"]["object"]["id"]


async def ensure_customer(db, user) -> str | None:
    """Make sure a signed-in payer has a Stripe customer id."""
    if user is None or user.stripe_customer_id:
        return user.stripe_customer_id if user else None
    try:
        customer = stripe.Customer.create(email=user.email, name=user.name)
    except stripe.StripeError as e:
        logger.error(f"Failed to create Stripe customer for {user.uuid}: {e}")
        raise ProviderError(str(e)) from e
    user.stripe_customer_id = customer.id
    await db.flush()
    return customer.id
