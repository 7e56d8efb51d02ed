"""Earnings models: creator revenue events, settlement runs and download stats."""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, Integer, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class EarningsEvent(Base):
    """Immutable record of one creator earning.

    Created by the commission split engine when a revenue-bearing
    transaction settles, or when a free product crosses a download milestone.
    All amounts stored in cents; creator + platform == gross always.
    """
    __tablename__ = "earnings_events"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    creator_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)  # "product_sale", "course_sale", "free_download_milestone"
    # Unique so a transaction can only ever produce one sale event
    source_transaction_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("transactions.uuid"), nullable=True, unique=True
    )
    source_product_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("products.uuid"), nullable=True)
    gross_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    creator_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # "pending", "available"
    event_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    matured_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_earnings_event_creator_id", "creator_id"),
        Index("idx_earnings_event_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<EarningsEvent(uuid={self.uuid}, creator_id={self.creator_id}, event_type={self.event_type})>"


class SettlementRun(Base):
    """One earnings maturation run per calendar date."""
    __tablename__ = "settlement_runs"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    settlement_date: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)  # YYYY-MM-DD
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")  # "running", "completed", "failed"
    creators_processed: Mapped[int] = mapped_column(Integer, default=0)
    events_matured: Mapped[int] = mapped_column(Integer, default=0)
    total_matured_cents: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<SettlementRun(settlement_date={self.settlement_date}, status={self.status})>"


class ProductDownloadStat(Base):
    """Free download counter used for milestone rewards."""
    __tablename__ = "product_download_stats"

    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.uuid"), primary_key=True)
    free_downloads: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_milestone_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_download_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
