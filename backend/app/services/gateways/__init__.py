"""Payment gateway adapters."""
from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.transaction import GATEWAYS
from app.services.gateways.base import (
    CancelStatus,
    ConfirmResult,
    ConfirmStatus,
    GatewayAdapter,
    InitiateResult,
    ProviderError,
    ProviderTimeout,
)
from app.services.gateways.card import CardGateway
from app.services.gateways.dodopay import DodoPayGateway
from app.services.gateways.paypal import PayPalGateway
from app.services.gateways.vodapay import VodaPayGateway
from app.services.gateways.wallet import WalletGateway


def get_gateway(name: str, db: AsyncSession) -> GatewayAdapter:
    """Resolve a gateway id to its adapter. The wallet adapter works inside
    the caller's database session."""
    if name == "card":
        return CardGateway()
    if name == "wallet":
        return WalletGateway(db)
    if name == "paypal":
        return PayPalGateway()
    if name == "vodapay":
        return VodaPayGateway()
    if name == "dodopay":
        return DodoPayGateway()
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"Unsupported gateway '{name}'. Choose one of: {', '.join(GATEWAYS)}"
    )


__all__ = [
    "CancelStatus",
    "ConfirmResult",
    "ConfirmStatus",
    "GatewayAdapter",
    "InitiateResult",
    "ProviderError",
    "ProviderTimeout",
    "get_gateway",
]
