"""Purchase model: access grant created when an order settles."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base


class Purchase(Base):
    """Grants the buyer access to a product or course."""

    __tablename__ = "purchases"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    product_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # One purchase per settled transaction
    transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey("transactions.uuid"), nullable=False, unique=True)

    # Null for guest checkout
    user_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.uuid"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    product: Mapped["Product"] = relationship("Product", back_populates="purchases", foreign_keys=[product_id])

    __table_args__ = (
        Index("idx_purchase_user_id", "user_id"),
        Index("idx_purchase_product_id", "product_id"),
    )

    def __repr__(self) -> str:
        return f"<Purchase(uuid={self.uuid}, user_id={self.user_id}, product_id={self.product_id})>"
