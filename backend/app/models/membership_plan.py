"""Membership plan catalog model."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, Boolean, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base

BILLING_CYCLE_DAYS = {
    "monthly": 30,
    "yearly": 365,
}


class MembershipPlan(Base):
    """Admin-configurable membership tier. Prices stored in cents."""

    __tablename__ = "membership_plans"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    plan_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)  # "free", "creator", "pro", "business"
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    monthly_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    yearly_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_membership_plan_active", "active"),
    )

    def period_price_cents(self, billing_cycle: str) -> int:
        if billing_cycle == "monthly":
            return self.monthly_price_cents
        if billing_cycle == "yearly":
            return self.yearly_price_cents
        raise ValueError(f"Unsupported billing cycle: {billing_cycle}")

    def __repr__(self) -> str:
        return f"<MembershipPlan(plan_id={self.plan_id}, monthly={self.monthly_price_cents})>"
