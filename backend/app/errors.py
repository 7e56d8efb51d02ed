"""Payment domain errors.

Each error is an ``HTTPException`` so service code can raise it directly and
FastAPI renders the usual ``{"detail": ...}`` body.
"""
from fastapi import HTTPException, status


class InsufficientBalance(HTTPException):
    """Wallet debit or payout reservation exceeds the available balance."""

    def __init__(self, detail: str = "Insufficient balance"):
        super().__init__(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)


class StaleQuote(HTTPException):
    """Charged amount no longer matches a freshly computed upgrade quote."""

    def __init__(self, detail: str = "Upgrade price has changed, please request a new quote"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class GatewayError(HTTPException):
    """Provider-side failure. The provider's own message is kept on the transaction."""

    def __init__(self, detail: str = "Payment failed, please try again"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


class GatewayTimeout(HTTPException):
    """Provider did not respond within its bound."""

    def __init__(self, detail: str = "Payment provider did not respond, please try again"):
        super().__init__(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=detail)


class InvalidStateTransition(HTTPException):
    """Attempted transition out of a terminal (or otherwise wrong) state."""

    def __init__(self, detail: str = "Invalid state transition"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class UnknownPlan(HTTPException):
    def __init__(self, plan_id: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Membership plan '{plan_id}' not found",
        )


class UnsupportedBillingCycle(HTTPException):
    def __init__(self, billing_cycle: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported billing cycle '{billing_cycle}'",
        )


class InvalidWebhookSignature(HTTPException):
    def __init__(self, detail: str = "Invalid signature"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)
