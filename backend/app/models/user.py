"""User model for the Filiova payments service."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class User(Base):
    """Local projection of an identity-provider account.

    Only what payment orchestration needs: who the payer or creator is, their
    role for authorization, and their Stripe customer handle.
    """

    __tablename__ = "users"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(50), default="active")
    # "user", "creator" (tutor/freelancer/shop), "admin", "accountant", "customer_service"
    user_role: Mapped[str] = mapped_column(String(50), default="user")

    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_user_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<User(uuid={self.uuid}, email={self.email}, role={self.user_role})>"
