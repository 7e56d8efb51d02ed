"""Platform wallet: no external party, settlement is a ledger debit."""
import logging
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InsufficientBalance
from app.models.transaction import Transaction
from app.services import ledger
from app.services.gateways.base import (
    CancelStatus, ConfirmResult, ConfirmStatus, GatewayAdapter, InitiateResult, ProviderError,
)

logger = logging.getLogger(__name__)


class WalletGateway(GatewayAdapter):
    """Initiate only checks funds; confirm performs the debit.

    The orchestrator runs both in one call and one database transaction, so to
    the caller a wallet payment is a single atomic step.
    """

    name = "wallet"
    synchronous = True
    confirm_timeout_minutes = 0

    def __init__(self, db: AsyncSession):
        self.db = db

    async def initiate(self, amount_cents: int, currency: str, metadata: Mapping[str, str]) -> InitiateResult:
        payer_id = metadata.get("payer_id")
        if not payer_id:
            raise ProviderError("Wallet payments require a signed-in payer")

        wallet = await ledger.get_wallet(self.db, payer_id)
        available = wallet.available_cents if wallet else 0
        if available < amount_cents:
            raise InsufficientBalance("Insufficient wallet balance, please choose another payment method")

        return InitiateResult(external_ref=f"wallet_{metadata['transaction_id']}")

    async def _transaction(self, external_ref: str) -> Transaction:
        result = await self.db.execute(
            select(Transaction).where(
                Transaction.gateway == self.name,
                Transaction.external_ref == external_ref,
            )
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise ProviderError(f"Unknown wallet reference {external_ref}")
        return transaction

    async def confirm(self, external_ref: str) -> ConfirmResult:
        transaction = await self._transaction(external_ref)
        try:
            await ledger.debit(
                self.db,
                transaction.payer_id,
                transaction.amount_cents,
                f"Payment for {transaction.subject_type} {transaction.subject_id}",
                reference_id=transaction.uuid,
            )
        except InsufficientBalance as e:
            logger.info(f"Wallet payment {transaction.uuid} declined: {e.detail}")
            return ConfirmResult(ConfirmStatus.FAILED, e.detail)
        return ConfirmResult(ConfirmStatus.SUCCEEDED)

    async def cancel(self, external_ref: str) -> str:
        # Nothing is held at initiation, so there is nothing to undo
        return CancelStatus.CANCELLED
