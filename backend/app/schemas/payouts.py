"""Schemas for creator earnings, payout accounts and payout requests."""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from app.schemas.balance import WalletBalanceResponse
from app.services.money import cents_to_float

PayoutMethodField = Literal["bank", "paypal", "crypto", "mobile_money"]


class PayoutAccountCreate(BaseModel):
    account_type: PayoutMethodField
    account_name: str = Field(..., min_length=1, max_length=255)
    details: dict = Field(default_factory=dict, description="Method-specific fields, e.g. PayPal email")
    is_default: bool = False


class PayoutAccountResponse(BaseModel):
    uuid: str
    account_type: str
    account_name: str
    details: dict
    is_default: bool
    created_at: datetime

    class Config:
        from_attributes = True


class PayoutRequestCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Amount to withdraw")
    payout_method: PayoutMethodField
    payout_account_id: str
    notes: Optional[str] = Field(None, max_length=1000)


class PayoutRequestResponse(BaseModel):
    uuid: str
    creator_id: str
    amount: float
    payout_method: str
    payout_account_id: str
    status: str
    rejection_reason: Optional[str] = None
    payment_reference: Optional[str] = None
    creator_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    requested_at: datetime
    decided_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    payout_date: Optional[datetime] = None
    finalized_at: Optional[datetime] = None

    @classmethod
    def from_payout(cls, payout) -> "PayoutRequestResponse":
        return cls(
            uuid=payout.uuid,
            creator_id=payout.creator_id,
            amount=cents_to_float(payout.amount_requested_cents),
            payout_method=payout.payout_method,
            payout_account_id=payout.payout_account_id,
            status=payout.status,
            rejection_reason=payout.rejection_reason,
            payment_reference=payout.payment_reference,
            creator_notes=payout.creator_notes,
            admin_notes=payout.admin_notes,
            requested_at=payout.requested_at,
            decided_at=payout.decided_at,
            processed_at=payout.processed_at,
            payout_date=payout.payout_date,
            finalized_at=payout.finalized_at,
        )


class PayoutListResponse(BaseModel):
    payouts: List[PayoutRequestResponse]
    total: int


class RejectPayoutRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Shown to the creator")


class FailPayoutRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class MarkProcessingRequest(BaseModel):
    payment_reference: Optional[str] = None
    admin_notes: Optional[str] = None


class BulkMarkProcessingRequest(BaseModel):
    payout_ids: List[str] = Field(..., min_length=1)


class BulkResult(BaseModel):
    payout_id: str
    success: bool
    error: Optional[str] = None


class EarningsEventResponse(BaseModel):
    uuid: str
    event_type: str
    source_transaction_id: Optional[str]
    source_product_id: Optional[str]
    gross_amount: float
    creator_amount: float
    platform_amount: float
    status: str
    event_date: datetime

    @classmethod
    def from_event(cls, event) -> "EarningsEventResponse":
        return cls(
            uuid=event.uuid,
            event_type=event.event_type,
            source_transaction_id=event.source_transaction_id,
            source_product_id=event.source_product_id,
            gross_amount=cents_to_float(event.gross_amount_cents),
            creator_amount=cents_to_float(event.creator_amount_cents),
            platform_amount=cents_to_float(event.platform_amount_cents),
            status=event.status,
            event_date=event.event_date,
        )


class CreatorBalanceResponse(BaseModel):
    """Creator earnings dashboard."""

    balance: WalletBalanceResponse
    recent_earnings: List[EarningsEventResponse]
    pending_payouts: List[PayoutRequestResponse]
    can_withdraw: bool
    minimum_payout: float
    next_payout_date: datetime


class SettlementRunResponse(BaseModel):
    settlement_date: str
    status: str
    creators_processed: int
    events_matured: int
    total_matured: float
    error_message: Optional[str] = None
    run_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @classmethod
    def from_run(cls, run) -> "SettlementRunResponse":
        return cls(
            settlement_date=run.settlement_date,
            status=run.status,
            creators_processed=run.creators_processed or 0,
            events_matured=run.events_matured or 0,
            total_matured=cents_to_float(run.total_matured_cents),
            error_message=run.error_message,
            run_at=run.run_at,
            completed_at=run.completed_at,
            duration_ms=run.duration_ms,
        )


class SettlementPreviewEntry(BaseModel):
    creator_id: str
    events: int
    pending_amount: float


class SettlementPreviewResponse(BaseModel):
    creators: List[SettlementPreviewEntry]
    total_pending: float


class FinalizeSummary(BaseModel):
    completed: int
    failed: int
    skipped: int
