"""Subscription model for membership tiers."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class Subscription(Base):
    """A user's membership. At most one active row per user."""

    __tablename__ = "subscriptions"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    status: Mapped[str] = mapped_column(String(50), default="active")  # "active", "cancelled", "expired"
    plan_id: Mapped[str] = mapped_column(String(50), ForeignKey("membership_plans.plan_id"), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")

    # Downgrades never charge; they are applied when the current period ends.
    scheduled_plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Transaction that last paid for this subscription
    transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)

    current_period_start: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    current_period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_subscription_user_id", "user_id"),
        Index("idx_subscription_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(uuid={self.uuid}, user_id={self.user_id}, plan_id={self.plan_id}, status={self.status})>"
