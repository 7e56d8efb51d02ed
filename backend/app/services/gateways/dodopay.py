"""DodoPay redirect gateway (payment links, Standard Webhooks callbacks)."""
import logging
from typing import Mapping, Optional

import httpx
from standardwebhooks.webhooks import Webhook, WebhookVerificationError

from app.config import settings
from app.errors import InvalidWebhookSignature
from app.services.gateways.base import (
    CancelStatus, ConfirmResult, ConfirmStatus, HttpGatewayAdapter, InitiateResult, ProviderError,
)

logger = logging.getLogger(__name__)

TEST_URL = "https://test.dodopayments.com"
LIVE_URL = "https://live.dodopayments.com"

PAYMENT_EVENTS = frozenset({"payment.succeeded", "payment.failed", "payment.cancelled"})


class DodoPayGateway(HttpGatewayAdapter):
    name = "dodopay"
    confirm_timeout_minutes = settings.DODOPAY_CONFIRM_TIMEOUT_MINUTES

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport)
        self.base_url = TEST_URL if settings.DODOPAY_TEST_MODE else LIVE_URL

    def _headers(self) -> dict:
        if not settings.DODOPAY_API_KEY:
            raise ProviderError("DodoPay is not configured")
        return {"Authorization": f"Bearer {settings.DODOPAY_API_KEY}"}

    async def initiate(self, amount_cents: int, currency: str, metadata: Mapping[str, str]) -> InitiateResult:
        payment = await self._request(
            "POST",
            "/payments",
            headers=self._headers(),
            json={
                "payment_link": True,
                "return_url": f"{settings.FRONTEND_URL}/payment-success?gateway=dodopay",
                "billing": {
                    "city": "Unknown",
                    "country": "ZA",
                    "state": "Unknown",
                    "street": "Unknown",
                    "zipcode": "0000",
                },
                "customer": {
                    "email": metadata.get("email") or "customer@example.com",
                    "name": metadata.get("name") or "Customer",
                },
                "product_cart": [{"product_id": metadata["subject_id"], "quantity": 1}],
                "metadata": {
                    "transaction_id": metadata["transaction_id"],
                    "amount_cents": str(amount_cents),
                    "currency": currency,
                },
            },
        )

        payment_id = payment.get("payment_id")
        if not payment_id or not payment.get("payment_link"):
            raise ProviderError("DodoPay response missing payment id or payment link")

        logger.info(f"DodoPay payment created: {payment_id}")
        return InitiateResult(external_ref=payment_id, redirect_url=payment["payment_link"])

    async def confirm(self, external_ref: str) -> ConfirmResult:
        payment = await self._request("GET", f"/payments/{external_ref}", headers=self._headers())
        payment_status = payment.get("status")
        if payment_status == "succeeded":
            return ConfirmResult(ConfirmStatus.SUCCEEDED)
        if payment_status in ("failed", "cancelled"):
            return ConfirmResult(ConfirmStatus.FAILED, f"DodoPay payment {payment_status}")
        return ConfirmResult(ConfirmStatus.STILL_PENDING)

    async def cancel(self, external_ref: str) -> str:
        outcome = await self.confirm(external_ref)
        if outcome.succeeded or outcome.failed:
            return CancelStatus.ALREADY_TERMINAL
        return CancelStatus.CANCELLED

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> Optional[str]:
        if not settings.DODOPAY_WEBHOOK_SECRET:
            logger.error("DodoPay webhook received but no webhook secret is configured")
            raise InvalidWebhookSignature()
        try:
            webhook = Webhook(settings.DODOPAY_WEBHOOK_SECRET)
        except ValueError:
            logger.error("DodoPay webhook secret is not valid base64")
            raise InvalidWebhookSignature()

        try:
            body = webhook.verify(payload, dict(headers.items()))
        except WebhookVerificationError as e:
            logger.warning(f"DodoPay webhook rejected: {e}")
            raise InvalidWebhookSignature()
        except ValueError:
            raise InvalidWebhookSignature("Invalid payload")

        event_type = body.get("event_type") or body.get("type")
        logger.info(f"DodoPay webhook received: {event_type}")
        if event_type not in PAYMENT_EVENTS:
            return None
        return (body.get("data") or {}).get("payment_id")
