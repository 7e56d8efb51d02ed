"""Transaction model: one attempt to move money through a gateway."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, DateTime, Text, JSON, ForeignKey, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, validates
from app.database import Base


class TransactionState:
    """The single source of truth for where a transaction is.

    created -> pending_gateway -> succeeded | failed | cancelled
    """

    CREATED = "created"
    PENDING_GATEWAY = "pending_gateway"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = frozenset({SUCCEEDED, FAILED, CANCELLED})

    # target state -> states it may be entered from
    ALLOWED_FROM = {
        PENDING_GATEWAY: frozenset({CREATED}),
        SUCCEEDED: frozenset({PENDING_GATEWAY}),
        FAILED: frozenset({CREATED, PENDING_GATEWAY}),
        CANCELLED: frozenset({CREATED, PENDING_GATEWAY}),
    }


class SubjectType:
    ORDER = "order"
    SUBSCRIPTION = "subscription"
    MEMBERSHIP_UPGRADE = "membership_upgrade"
    AD_CAMPAIGN = "ad_campaign"

    ALL = frozenset({ORDER, SUBSCRIPTION, MEMBERSHIP_UPGRADE, AD_CAMPAIGN})
    # Subjects whose sale credits a creator
    REVENUE_BEARING = frozenset({ORDER})


GATEWAYS = ("card", "wallet", "paypal", "vodapay", "dodopay")


class Transaction(Base):
    """A money movement attempt. Amounts in cents."""

    __tablename__ = "transactions"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    subject_type: Mapped[str] = mapped_column(String(50), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    billing_cycle: Mapped[str | None] = mapped_column(String(20), nullable=True)

    payer_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionState.CREATED)

    # Provider payment-intent / order / session id
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confirm_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Underlying provider error, kept for support diagnosis only
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("gateway", "external_ref", name="uq_transaction_gateway_external_ref"),
        UniqueConstraint("payer_id", "idempotency_key", name="uq_transaction_payer_idempotency_key"),
        CheckConstraint("amount_cents >= 0", name="ck_transaction_amount_non_negative"),
        Index("idx_transaction_payer_id", "payer_id"),
        Index("idx_transaction_state", "state"),
        Index("idx_transaction_subject", "subject_type", "subject_id"),
    )

    @validates("amount_cents")
    def _validate_amount(self, key, value):
        if self.amount_cents is not None and value != self.amount_cents:
            raise ValueError("Transaction amount is immutable once created")
        if value < 0:
            raise ValueError("Transaction amount cannot be negative")
        return value

    @validates("external_ref")
    def _validate_external_ref(self, key, value):
        if self.external_ref is not None and value != self.external_ref:
            raise ValueError("external_ref can only be assigned once")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.state in TransactionState.TERMINAL

    def __repr__(self) -> str:
        return f"<Transaction(uuid={self.uuid}, gateway={self.gateway}, state={self.state}, amount_cents={self.amount_cents})>"
