"""Product model (digital products and courses sold by creators)."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base


class Product(Base):
    """Sellable item. Revenue from items without a creator goes to the platform."""

    __tablename__ = "products"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_type: Mapped[str] = mapped_column(String(50), nullable=False, default="product")  # "product", "course"
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    creator_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    purchases: Mapped[list["Purchase"]] = relationship("Purchase", back_populates="product")

    __table_args__ = (
        Index("idx_product_type", "product_type"),
        Index("idx_product_creator_id", "creator_id"),
    )

    @property
    def is_free(self) -> bool:
        return self.price_cents == 0

    def __repr__(self) -> str:
        return f"<Product(uuid={self.uuid}, name={self.name}, product_type={self.product_type})>"
