"""VodaPay redirect gateway (South Africa, ZAR only)."""
import hashlib
import hmac
import json
import logging
from typing import Mapping, Optional

import httpx

from app.config import settings
from app.errors import InvalidWebhookSignature
from app.services.gateways.base import (
    CancelStatus, ConfirmResult, ConfirmStatus, HttpGatewayAdapter, InitiateResult, ProviderError,
)
from app.services.money import apply_rate

logger = logging.getLogger(__name__)

UAT_URL = "https://api.vodapaygatewayuat.vodacom.co.za/v2"
LIVE_URL = "https://api.vodapaygateway.vodacom.co.za/v2"

ZAR_NUMERIC_CODE = "710"

SUCCESS_STATUSES = frozenset({"completed", "success"})
FAILURE_STATUSES = frozenset({"failed", "cancelled"})


def to_zar_cents(amount_cents: int, currency: str) -> int:
    """The one FX conversion point in the system."""
    if currency.upper() == "ZAR":
        return amount_cents
    return apply_rate(amount_cents, settings.VODAPAY_USD_ZAR_RATE)


def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class VodaPayGateway(HttpGatewayAdapter):
    name = "vodapay"
    confirm_timeout_minutes = settings.VODAPAY_CONFIRM_TIMEOUT_MINUTES

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport)
        self.test_mode = settings.VODAPAY_TEST_MODE
        self.base_url = UAT_URL if self.test_mode else LIVE_URL

    def _headers(self) -> dict:
        return {
            "Authorization": settings.VODAPAY_API_KEY,
            "x-api-key": settings.VODAPAY_API_KEY,
        }

    async def initiate(self, amount_cents: int, currency: str, metadata: Mapping[str, str]) -> InitiateResult:
        merchant_reference = f"VP_{metadata['transaction_id']}"
        zar_cents = to_zar_cents(amount_cents, currency)

        if self.test_mode:
            # Simulated checkout: the success page confirms straight away
            checkout_url = (
                f"{settings.FRONTEND_URL}/payment-success?gateway=vodapay"
                f"&session_id={merchant_reference}&test=true"
            )
            logger.info(f"VodaPay test checkout created: {merchant_reference}")
            return InitiateResult(
                external_ref=merchant_reference,
                redirect_url=checkout_url,
                provider_amount_cents=zar_cents,
                provider_currency="ZAR",
            )

        data = await self._request(
            "POST",
            "/payment/initiate",
            headers=self._headers(),
            json={
                "amount": zar_cents,
                "currencyCode": ZAR_NUMERIC_CODE,
                "merchantId": settings.VODAPAY_MERCHANT_ID,
                "merchantReference": merchant_reference,
                "echoData": json.dumps({
                    "transactionId": metadata["transaction_id"],
                    "originalAmountCents": amount_cents,
                    "originalCurrency": currency,
                }),
                "callbackUrl": f"{settings.FRONTEND_URL}/payment-success?gateway=vodapay",
                "notificationUrl": f"{settings.FRONTEND_URL}/api/webhooks/vodapay",
            },
        )

        checkout_url = data.get("checkoutUrl") or data.get("paymentUrl")
        if not checkout_url:
            raise ProviderError("VodaPay response missing checkout URL")
        return InitiateResult(
            external_ref=data.get("paymentId") or merchant_reference,
            redirect_url=checkout_url,
            provider_amount_cents=zar_cents,
            provider_currency="ZAR",
        )

    async def confirm(self, external_ref: str) -> ConfirmResult:
        if self.test_mode:
            return ConfirmResult(ConfirmStatus.SUCCEEDED)

        data = await self._request("GET", f"/payments/{external_ref}", headers=self._headers())
        payment_status = str(data.get("status", "")).lower()
        if payment_status in SUCCESS_STATUSES:
            return ConfirmResult(ConfirmStatus.SUCCEEDED)
        if payment_status in FAILURE_STATUSES:
            return ConfirmResult(ConfirmStatus.FAILED, f"VodaPay payment {payment_status}")
        return ConfirmResult(ConfirmStatus.STILL_PENDING)

    async def cancel(self, external_ref: str) -> str:
        if self.test_mode:
            return CancelStatus.CANCELLED
        outcome = await self.confirm(external_ref)
        if outcome.succeeded or outcome.failed:
            return CancelStatus.ALREADY_TERMINAL
        return CancelStatus.CANCELLED

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> Optional[str]:
        signature = headers.get("x-vodapay-signature", "")
        if not signature:
            raise InvalidWebhookSignature("Missing signature")
        if not settings.VODAPAY_WEBHOOK_SECRET:
            logger.error("VodaPay webhook received but no webhook secret is configured")
            raise InvalidWebhookSignature()

        expected = sign_payload(payload, settings.VODAPAY_WEBHOOK_SECRET)
        if not hmac.compare_digest(expected, signature):
            logger.warning("VodaPay webhook signature verification failed")
            raise InvalidWebhookSignature()

        try:
            body = json.loads(payload)
        except ValueError:
            raise InvalidWebhookSignature("Invalid payload")

        logger.info(f"VodaPay webhook received: {body.get('status')} for {body.get('paymentId')}")
        return body.get("paymentId") or body.get("merchantReference")
