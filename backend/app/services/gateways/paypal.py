"""PayPal Orders v2 (checkout redirect) and Payouts (creator disbursement)."""
import logging
from typing import Mapping, Optional

import httpx

from app.config import settings
from app.services.gateways.base import (
    CancelStatus, ConfirmResult, ConfirmStatus, HttpGatewayAdapter, InitiateResult, ProviderError,
)
from app.services.money import from_cents

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
LIVE_URL = "https://api-m.paypal.com"

PENDING_ORDER_STATUSES = frozenset({"CREATED", "SAVED", "PAYER_ACTION_REQUIRED"})


class PayPalGateway(HttpGatewayAdapter):
    name = "paypal"
    confirm_timeout_minutes = settings.PAYPAL_CONFIRM_TIMEOUT_MINUTES

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport)
        self.base_url = LIVE_URL if settings.PAYPAL_MODE == "live" else SANDBOX_URL

    async def _auth_headers(self) -> dict:
        if not settings.PAYPAL_CLIENT_ID or not settings.PAYPAL_CLIENT_SECRET:
            raise ProviderError("PayPal is not configured")
        token = await self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(settings.PAYPAL_CLIENT_ID, settings.PAYPAL_CLIENT_SECRET),
            data={"grant_type": "client_credentials"},
        )
        return {"Authorization": f"Bearer {token['access_token']}"}

    async def initiate(self, amount_cents: int, currency: str, metadata: Mapping[str, str]) -> InitiateResult:
        transaction_id = metadata["transaction_id"]
        headers = await self._auth_headers()
        headers["PayPal-Request-Id"] = f"tx_{transaction_id}"

        order = await self._request(
            "POST",
            "/v2/checkout/orders",
            headers=headers,
            json={
                "intent": "CAPTURE",
                "purchase_units": [{
                    "reference_id": transaction_id,
                    "description": metadata.get("description", "Filiova purchase")[:127],
                    "amount": {"currency_code": currency.upper(), "value": str(from_cents(amount_cents))},
                }],
                "application_context": {
                    "return_url": f"{settings.FRONTEND_URL}/payment-success?gateway=paypal",
                    "cancel_url": f"{settings.FRONTEND_URL}/payment-cancelled?gateway=paypal",
                    "user_action": "PAY_NOW",
                },
            },
        )

        approve_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not order.get("id") or not approve_url:
            raise ProviderError("PayPal order response missing id or approval link")

        return InitiateResult(external_ref=order["id"], redirect_url=approve_url)

    async def _get_order(self, order_id: str, headers: dict) -> dict:
        return await self._request("GET", f"/v2/checkout/orders/{order_id}", headers=headers)

    async def confirm(self, external_ref: str) -> ConfirmResult:
        headers = await self._auth_headers()
        order = await self._get_order(external_ref, headers)
        order_status = order.get("status")

        if order_status == "APPROVED":
            # The buyer came back from PayPal; capture the funds now
            headers["PayPal-Request-Id"] = f"capture_{external_ref}"
            order = await self._request(
                "POST",
                f"/v2/checkout/orders/{external_ref}/capture",
                headers={**headers, "Content-Type": "application/json"},
            )
            order_status = order.get("status")

        if order_status == "COMPLETED":
            return ConfirmResult(ConfirmStatus.SUCCEEDED)
        if order_status == "VOIDED":
            return ConfirmResult(ConfirmStatus.FAILED, "PayPal order was voided")
        if order_status in PENDING_ORDER_STATUSES:
            return ConfirmResult(ConfirmStatus.STILL_PENDING)

        logger.warning(f"Unexpected PayPal order status {order_status} for {external_ref}")
        return ConfirmResult(ConfirmStatus.STILL_PENDING)

    async def cancel(self, external_ref: str) -> str:
        # Unapproved orders simply expire at PayPal; only a captured one is final
        headers = await self._auth_headers()
        order = await self._get_order(external_ref, headers)
        if order.get("status") in ("COMPLETED", "VOIDED"):
            return CancelStatus.ALREADY_TERMINAL
        return CancelStatus.CANCELLED

    async def send_payout(self, payout_id: str, receiver_email: str, amount_cents: int, currency: str) -> str:
        """Disburse to a PayPal account. Returns the payout batch id."""
        headers = await self._auth_headers()
        batch = await self._request(
            "POST",
            "/v1/payments/payouts",
            headers=headers,
            json={
                "sender_batch_header": {
                    "sender_batch_id": f"payout_{payout_id}",
                    "email_subject": "You have a payout from Filiova",
                },
                "items": [{
                    "recipient_type": "EMAIL",
                    "receiver": receiver_email,
                    "amount": {"value": str(from_cents(amount_cents)), "currency": currency.upper()},
                    "sender_item_id": payout_id,
                    "note": "Creator earnings payout",
                }],
            },
        )
        batch_id = batch.get("batch_header", {}).get("payout_batch_id")
        if not batch_id:
            raise ProviderError("PayPal payout response missing batch id")

        logger.info(f"PayPal payout batch {batch_id} created for payout {payout_id}")
        return batch_id
