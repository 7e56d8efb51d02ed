"""Payout-direction adapters: send a creator's held funds out of the platform."""
import logging
from typing import Optional

import httpx

from app.config import settings
from app.models.payout import PayoutAccount, PayoutRequest
from app.services.gateways.base import ProviderError
from app.services.gateways.paypal import PayPalGateway

logger = logging.getLogger(__name__)


class ManualDisbursement:
    """Bank, crypto and mobile money transfers are made by finance staff.

    The reference they record when marking the payout processing becomes the
    payment reference; finalization only confirms it.
    """

    async def send(self, payout: PayoutRequest, account: PayoutAccount) -> str:
        reference = payout.payment_reference or f"MANUAL-{payout.uuid[:8].upper()}"
        logger.info(f"Manual {account.account_type} payout {payout.uuid} finalized with reference {reference}")
        return reference


class PayPalDisbursement:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.gateway = PayPalGateway(transport=transport)

    async def send(self, payout: PayoutRequest, account: PayoutAccount) -> str:
        email = (account.details or {}).get("email")
        if not email:
            raise ProviderError("PayPal payout account has no e-mail address")
        return await self.gateway.send_payout(
            payout.uuid, email, payout.amount_requested_cents, settings.DEFAULT_CURRENCY
        )


def get_disburser(payout_method: str, transport: Optional[httpx.AsyncBaseTransport] = None):
    if payout_method == "paypal":
        return PayPalDisbursement(transport=transport)
    return ManualDisbursement()
