"""Schemas for checkout and transaction endpoints."""
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from pydantic import BaseModel, EmailStr, Field

from app.services.money import cents_to_float

SubjectTypeField = Literal["order", "subscription", "membership_upgrade", "ad_campaign"]
GatewayField = Literal["card", "wallet", "paypal", "vodapay", "dodopay"]


class CheckoutRequest(BaseModel):
    """Start paying for something."""

    subject_type: SubjectTypeField = Field(..., description="What is being bought")
    subject_id: str = Field(..., description="Product uuid, plan id or ad campaign uuid")
    gateway: GatewayField = Field(..., description="Payment backend to use")
    billing_cycle: Optional[Literal["monthly", "yearly"]] = Field(None, description="For subscriptions and upgrades")
    idempotency_key: Optional[str] = Field(None, max_length=255, description="Repeat-safe key for this intent")
    guest_email: Optional[EmailStr] = Field(None, description="Required when checking out without an account")
    expected_amount: Optional[Decimal] = Field(None, ge=0, description="Price the client showed the buyer")


class ConfirmRequest(BaseModel):
    transaction_id: Optional[str] = Field(None, description="Our transaction uuid")
    external_ref: Optional[str] = Field(None, description="Provider payment reference")
    gateway: Optional[GatewayField] = Field(None, description="Gateway the external reference belongs to")


class TransactionResponse(BaseModel):
    """A transaction as the client sees it. Provider errors are not exposed."""

    uuid: str
    subject_type: str
    subject_id: str
    billing_cycle: Optional[str] = None
    amount: float
    currency: str
    gateway: str
    state: str
    external_ref: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    publishable_key: Optional[str] = None
    created_at: datetime
    settled_at: Optional[datetime] = None

    @classmethod
    def from_transaction(cls, transaction, publishable_key: Optional[str] = None) -> "TransactionResponse":
        return cls(
            uuid=transaction.uuid,
            subject_type=transaction.subject_type,
            subject_id=transaction.subject_id,
            billing_cycle=transaction.billing_cycle,
            amount=cents_to_float(transaction.amount_cents),
            currency=transaction.currency,
            gateway=transaction.gateway,
            state=transaction.state,
            external_ref=transaction.external_ref,
            # The client secret is only useful until the payment settles
            client_secret=transaction.client_secret if not transaction.is_terminal else None,
            redirect_url=transaction.redirect_url if not transaction.is_terminal else None,
            publishable_key=publishable_key,
            created_at=transaction.created_at,
            settled_at=transaction.settled_at,
        )


class CheckoutResponse(BaseModel):
    transaction: TransactionResponse
    already_processed: bool = Field(False, description="True when this call changed nothing")
    retry_after_seconds: Optional[int] = Field(None, description="When to confirm again if still pending")
