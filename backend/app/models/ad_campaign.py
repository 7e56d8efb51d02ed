"""Paid banner ad campaign model."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class AdCampaign(Base):
    """An ad campaign becomes active only once its payment settles."""

    __tablename__ = "ad_campaigns"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    status: Mapped[str] = mapped_column(String(50), default="draft")  # "draft", "active", "expired"

    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    starts_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_ad_campaign_owner_id", "owner_id"),
        Index("idx_ad_campaign_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<AdCampaign(uuid={self.uuid}, status={self.status})>"
