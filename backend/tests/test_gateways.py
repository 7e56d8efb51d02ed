"""Tests for the payment gateway adapters."""
import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import httpx
import pytest
import stripe
from fastapi import HTTPException
from standardwebhooks.webhooks import Webhook

from app.config import settings
from app.errors import InvalidWebhookSignature
from app.services.gateways import ConfirmStatus, ProviderError, ProviderTimeout, get_gateway
from app.services.gateways.card import CardGateway
from app.services.gateways.dodopay import DodoPayGateway
from app.services.gateways.paypal import PayPalGateway
from app.services.gateways.vodapay import VodaPayGateway, sign_payload, to_zar_cents

METADATA = {
    "transaction_id": "tx-123",
    "subject_type": "order",
    "subject_id": "prod-1",
    "description": "Trading Course",
    "email": "buyer@example.com",
    "name": "Test Buyer",
}

DODO_SECRET = "whsec_" + base64.b64encode(b"dodo-test-secret").decode()


def test_unknown_gateway_is_rejected():
    with pytest.raises(HTTPException) as exc:
        get_gateway("bitcoin", db=None)
    assert exc.value.status_code == 400


# ── Card ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("intent_status, expected", [
    ("succeeded", ConfirmStatus.SUCCEEDED),
    ("canceled", ConfirmStatus.FAILED),
    ("requires_action", ConfirmStatus.STILL_PENDING),
    ("processing", ConfirmStatus.STILL_PENDING),
])
async def test_card_confirm_maps_intent_status(intent_status, expected):
    intent = MagicMock(status=intent_status, last_payment_error=None)
    with patch("stripe.PaymentIntent.retrieve", return_value=intent):
        outcome = await CardGateway().confirm("pi_1")
    assert outcome.status == expected


@pytest.mark.asyncio
async def test_card_provider_error_is_wrapped():
    with patch("stripe.PaymentIntent.retrieve", side_effect=stripe.StripeError("No such payment_intent")):
        with pytest.raises(ProviderError):
            await CardGateway().confirm("pi_missing")


@pytest.mark.asyncio
async def test_card_webhook_needs_a_signature():
    with pytest.raises(InvalidWebhookSignature):
        await CardGateway().parse_webhook(b"{}", {})


@pytest.mark.asyncio
async def test_card_webhook_returns_intent_id():
    event = {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_42"}}}
    with patch("stripe.Webhook.construct_event", return_value=event):
        ref = await CardGateway().parse_webhook(b"{}", {"stripe-signature": "t=1,v1=abc"})
    assert ref == "pi_42"


@pytest.mark.asyncio
async def test_card_webhook_ignores_unrelated_events():
    event = {"type": "customer.created", "data": {"object": {"id": "cus_1"}}}
    with patch("stripe.Webhook.construct_event", return_value=event):
        assert await CardGateway().parse_webhook(b"{}", {"stripe-signature": "t=1,v1=abc"}) is None


@pytest.mark.asyncio
async def test_card_webhook_bad_signature():
    error = stripe.SignatureVerificationError("bad", "t=1,v1=abc")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(InvalidWebhookSignature):
            await CardGateway().parse_webhook(b"{}", {"stripe-signature": "t=1,v1=abc"})


# ── PayPal ───────────────────────────────────────────────────────────────────

@pytest.fixture
def paypal_configured():
    with patch.object(settings, "PAYPAL_CLIENT_ID", "client-id"), \
         patch.object(settings, "PAYPAL_CLIENT_SECRET", "client-secret"):
        yield


@pytest.mark.asyncio
async def test_paypal_order_returns_approval_link(paypal_configured):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "token-123"})
        seen["body"] = json.loads(request.content)
        seen["request_id"] = request.headers["PayPal-Request-Id"]
        return httpx.Response(201, json={
            "id": "ORDER-1",
            "status": "CREATED",
            "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1"}],
        })

    gateway = PayPalGateway(transport=httpx.MockTransport(handler))
    result = await gateway.initiate(4599, "USD", METADATA)

    assert result.external_ref == "ORDER-1"
    assert result.redirect_url.endswith("token=ORDER-1")
    assert seen["body"]["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "45.99"}
    assert seen["request_id"] == "tx_tx-123"


@pytest.mark.asyncio
async def test_paypal_confirm_captures_approved_order(paypal_configured):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "token-123"})
        if request.url.path.endswith("/capture"):
            return httpx.Response(201, json={"id": "ORDER-1", "status": "COMPLETED"})
        return httpx.Response(200, json={"id": "ORDER-1", "status": "APPROVED"})

    outcome = await PayPalGateway(transport=httpx.MockTransport(handler)).confirm("ORDER-1")
    assert outcome.succeeded


@pytest.mark.asyncio
async def test_paypal_not_configured():
    with pytest.raises(ProviderError):
        await PayPalGateway().initiate(1000, "USD", METADATA)


# ── VodaPay ──────────────────────────────────────────────────────────────────

def test_zar_conversion():
    assert to_zar_cents(1000, "USD") == 18000
    assert to_zar_cents(1000, "ZAR") == 1000


@pytest.mark.asyncio
async def test_vodapay_test_mode_simulates_checkout():
    with patch.object(settings, "VODAPAY_TEST_MODE", True):
        gateway = VodaPayGateway()
    result = await gateway.initiate(1000, "USD", METADATA)

    assert result.external_ref == "VP_tx-123"
    assert "test=true" in result.redirect_url
    assert (result.provider_amount_cents, result.provider_currency) == (18000, "ZAR")
    assert (await gateway.confirm(result.external_ref)).succeeded


@pytest.mark.asyncio
async def test_vodapay_live_initiate_and_confirm():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "POST":
            return httpx.Response(200, json={"paymentId": "VP-99", "checkoutUrl": "https://pay.example/VP-99"})
        return httpx.Response(200, json={"status": "Completed"})

    with patch.object(settings, "VODAPAY_TEST_MODE", False):
        gateway = VodaPayGateway(transport=httpx.MockTransport(handler))
        result = await gateway.initiate(1000, "USD", METADATA)
        outcome = await gateway.confirm(result.external_ref)

    body = json.loads(requests[0].content)
    assert body["amount"] == 18000
    assert body["currencyCode"] == "710"
    assert json.loads(body["echoData"])["originalAmountCents"] == 1000
    assert result.external_ref == "VP-99"
    assert outcome.succeeded


@pytest.mark.asyncio
async def test_vodapay_live_initiate_without_checkout_url_fails():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"paymentId": "VP-99"}))
    with patch.object(settings, "VODAPAY_TEST_MODE", False):
        with pytest.raises(ProviderError) as exc:
            await VodaPayGateway(transport=transport).initiate(1000, "USD", METADATA)
    assert "checkout URL" in str(exc.value)


@pytest.mark.asyncio
@pytest.mark.parametrize("provider_status, expected", [
    ("failed", ConfirmStatus.FAILED),
    ("cancelled", ConfirmStatus.FAILED),
    ("pending", ConfirmStatus.STILL_PENDING),
])
async def test_vodapay_confirm_statuses(provider_status, expected):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"status": provider_status}))
    with patch.object(settings, "VODAPAY_TEST_MODE", False):
        outcome = await VodaPayGateway(transport=transport).confirm("VP-1")
    assert outcome.status == expected


@pytest.mark.asyncio
async def test_vodapay_webhook_signature():
    payload = json.dumps({"paymentId": "VP-99", "status": "completed"}).encode()
    with patch.object(settings, "VODAPAY_WEBHOOK_SECRET", "vp-secret"):
        gateway = VodaPayGateway()
        good = {"x-vodapay-signature": sign_payload(payload, "vp-secret")}
        assert await gateway.parse_webhook(payload, good) == "VP-99"

        with pytest.raises(InvalidWebhookSignature):
            await gateway.parse_webhook(payload, {"x-vodapay-signature": sign_payload(payload, "other")})
        with pytest.raises(InvalidWebhookSignature):
            await gateway.parse_webhook(payload, {})


# ── DodoPay ──────────────────────────────────────────────────────────────────

def _dodo_headers(payload: bytes, sent_at: datetime, msg_id: str = "msg_1") -> dict:
    signature = Webhook(DODO_SECRET).sign(msg_id, sent_at, payload.decode())
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": str(int(sent_at.timestamp())),
        "webhook-signature": signature,
    }


@pytest.fixture
def dodo_webhooks():
    with patch.object(settings, "DODOPAY_WEBHOOK_SECRET", DODO_SECRET):
        yield DodoPayGateway()


@pytest.mark.asyncio
async def test_dodopay_webhook_returns_payment_id(dodo_webhooks):
    now = datetime.now(timezone.utc)
    succeeded = json.dumps({"type": "payment.succeeded", "data": {"payment_id": "pay_7"}}).encode()
    refunded = json.dumps({"type": "refund.succeeded", "data": {"payment_id": "pay_7"}}).encode()

    assert await dodo_webhooks.parse_webhook(succeeded, _dodo_headers(succeeded, now)) == "pay_7"
    assert await dodo_webhooks.parse_webhook(refunded, _dodo_headers(refunded, now)) is None


@pytest.mark.asyncio
async def test_dodopay_accepts_any_rotated_signature(dodo_webhooks):
    payload = json.dumps({"type": "payment.succeeded", "data": {"payment_id": "pay_7"}}).encode()
    headers = _dodo_headers(payload, datetime.now(timezone.utc))
    headers["webhook-signature"] = "v1,b2xkLXNpZ25hdHVyZQ== " + headers["webhook-signature"]

    assert await dodo_webhooks.parse_webhook(payload, headers) == "pay_7"


@pytest.mark.asyncio
async def test_dodopay_rejects_old_timestamp(dodo_webhooks):
    payload = json.dumps({"type": "payment.succeeded", "data": {"payment_id": "pay_7"}}).encode()
    headers = _dodo_headers(payload, datetime.now(timezone.utc) - timedelta(minutes=10))

    with pytest.raises(InvalidWebhookSignature):
        await dodo_webhooks.parse_webhook(payload, headers)


@pytest.mark.asyncio
async def test_dodopay_rejects_tampered_body(dodo_webhooks):
    signed = json.dumps({"type": "payment.succeeded", "data": {"payment_id": "pay_7"}}).encode()
    tampered = json.dumps({"type": "payment.succeeded", "data": {"payment_id": "pay_8"}}).encode()
    headers = _dodo_headers(signed, datetime.now(timezone.utc))

    with pytest.raises(InvalidWebhookSignature):
        await dodo_webhooks.parse_webhook(tampered, headers)


@pytest.mark.asyncio
async def test_dodopay_rejects_missing_headers(dodo_webhooks):
    with pytest.raises(InvalidWebhookSignature):
        await dodo_webhooks.parse_webhook(b'{"type":"payment.succeeded"}', {})


@pytest.mark.asyncio
async def test_dodopay_webhook_without_secret_is_refused():
    payload = b'{"type":"payment.succeeded"}'
    with patch.object(settings, "DODOPAY_WEBHOOK_SECRET", ""):
        with pytest.raises(InvalidWebhookSignature):
            await DodoPayGateway().parse_webhook(payload, _dodo_headers(payload, datetime.now(timezone.utc)))


@pytest.mark.asyncio
async def test_dodopay_initiate_returns_payment_link():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"payment_id": "pay_7", "payment_link": "https://checkout.dodo/pay_7"})

    with patch.object(settings, "DODOPAY_API_KEY", "dodo-key"):
        result = await DodoPayGateway(transport=httpx.MockTransport(handler)).initiate(1000, "USD", METADATA)

    assert result.external_ref == "pay_7"
    assert result.redirect_url == "https://checkout.dodo/pay_7"
    assert seen["auth"] == "Bearer dodo-key"
    assert seen["url"].startswith("https://test.dodopayments.com")


@pytest.mark.asyncio
async def test_dodopay_api_error_is_a_provider_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="upstream down"))
    with patch.object(settings, "DODOPAY_API_KEY", "dodo-key"):
        with pytest.raises(ProviderError) as exc:
            await DodoPayGateway(transport=transport).confirm("pay_7")
    assert not isinstance(exc.value, ProviderTimeout)


@pytest.mark.asyncio
async def test_dodopay_timeout_is_reported_as_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with patch.object(settings, "DODOPAY_API_KEY", "dodo-key"):
        with pytest.raises(ProviderTimeout):
            await DodoPayGateway(transport=httpx.MockTransport(handler)).confirm("pay_7")
