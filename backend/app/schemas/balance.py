"""Schemas for wallet balance and ledger history endpoints."""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel

from app.services.money import cents_to_float


class LedgerEntryResponse(BaseModel):
    """One journal line."""

    uuid: str
    entry_type: str
    amount: float
    description: Optional[str]
    reference_id: Optional[str]
    created_at: datetime

    @classmethod
    def from_entry(cls, entry) -> "LedgerEntryResponse":
        return cls(
            uuid=entry.uuid,
            entry_type=entry.entry_type,
            amount=cents_to_float(entry.amount_cents),
            description=entry.description,
            reference_id=entry.reference_id,
            created_at=entry.created_at,
        )


class LedgerHistoryResponse(BaseModel):
    """Paginated ledger history."""

    entries: List[LedgerEntryResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class WalletBalanceResponse(BaseModel):
    holder_id: str
    available_balance: float
    held_balance: float
    pending_balance: float
    lifetime_earnings: float
    total_withdrawn: float

    @classmethod
    def from_wallet(cls, holder_id: str, wallet) -> "WalletBalanceResponse":
        if wallet is None:
            return cls(
                holder_id=holder_id,
                available_balance=0.0,
                held_balance=0.0,
                pending_balance=0.0,
                lifetime_earnings=0.0,
                total_withdrawn=0.0,
            )
        return cls(
            holder_id=holder_id,
            available_balance=cents_to_float(wallet.available_cents),
            held_balance=cents_to_float(wallet.held_cents),
            pending_balance=cents_to_float(wallet.pending_cents),
            lifetime_earnings=cents_to_float(wallet.lifetime_earnings_cents),
            total_withdrawn=cents_to_float(wallet.total_withdrawn_cents),
        )
