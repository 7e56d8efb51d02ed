"""Creator payout models."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, Boolean, DateTime, Text, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base

PAYOUT_METHODS = ("bank", "paypal", "crypto", "mobile_money")


class PayoutStatus:
    AWAITING_ADMIN = "awaiting_admin"
    APPROVED = "approved"
    PAYMENT_PROCESSING = "payment_processing"
    # Claimed by the finalization job; the transfer may already have left
    DISBURSING = "disbursing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, REJECTED, FAILED})


class PayoutAccount(Base):
    """Where a creator wants to be paid."""

    __tablename__ = "payout_accounts"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)
    account_type: Mapped[str] = mapped_column(String(20), nullable=False)  # one of PAYOUT_METHODS
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Method-specific details (PayPal e-mail, IBAN, wallet address ...)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_payout_account_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<PayoutAccount(uuid={self.uuid}, user_id={self.user_id}, type={self.account_type})>"


class PayoutRequest(Base):
    """A creator withdrawal. The requested amount is held from creation until
    exactly one of release (rejected/failed) or settle (completed)."""

    __tablename__ = "payout_requests"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    creator_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)
    amount_requested_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payout_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payout_account_id: Mapped[str] = mapped_column(String(36), ForeignKey("payout_accounts.uuid"), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=PayoutStatus.AWAITING_ADMIN)

    creator_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=True)
    finalized_by_job: Mapped[bool] = mapped_column(Boolean, default=False)

    requested_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    payout_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)  # the 5th of the month
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_payout_request_creator_id", "creator_id"),
        Index("idx_payout_request_status", "status"),
        Index("idx_payout_request_payout_date", "payout_date"),
    )

    def __repr__(self) -> str:
        return f"<PayoutRequest(uuid={self.uuid}, creator_id={self.creator_id}, status={self.status})>"
