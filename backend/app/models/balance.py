"""Wallet balance and ledger journal models."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, DateTime, Text, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class WalletBalance(Base):
    """One row per holder. Only ever mutated through app.services.ledger.

    available -- spendable / withdrawable
    held      -- reserved against payout requests in flight
    pending   -- creator earnings waiting for the maturation run
    """

    __tablename__ = "wallet_balances"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    holder_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False, unique=True)

    available_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    held_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_earnings_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_withdrawn_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("available_cents >= 0", name="ck_wallet_available_non_negative"),
        CheckConstraint("held_cents >= 0", name="ck_wallet_held_non_negative"),
        CheckConstraint("pending_cents >= 0", name="ck_wallet_pending_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<WalletBalance(holder_id={self.holder_id}, available={self.available_cents}, held={self.held_cents})>"


class LedgerEntry(Base):
    """Append-only journal of every wallet mutation."""

    __tablename__ = "ledger_entries"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # "debit", "credit", "reserve", "release", "settle", "pending", "mature"
    entry_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Transaction / payout request / earnings event that caused the entry
    reference_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    holder_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_ledger_entry_holder_id", "holder_id"),
        Index("idx_ledger_entry_type", "entry_type"),
        Index("idx_ledger_entry_reference_id", "reference_id"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry(holder_id={self.holder_id}, entry_type={self.entry_type}, amount_cents={self.amount_cents})>"
