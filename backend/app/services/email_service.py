"""Payout notification e-mails sent through the Resend API.

Delivery is best effort: failures are logged and reported as ``False``, they
never abort the payout operation that triggered them.
"""
import logging
import resend
from app.config import settings
from app.models.payout import PayoutRequest
from app.models.user import User
from app.services.money import from_cents

logger = logging.getLogger(__name__)

resend.api_key = settings.RESEND_API_KEY

BRAND_PRIMARY = "#0f766e"
BRAND_SUCCESS = "#16a34a"
BRAND_DANGER = "#dc2626"
BRAND_DARK = "#1f2937"
BRAND_LIGHT = "#f9fafb"


def get_email_template(title: str, content: str, accent: str = BRAND_PRIMARY) -> str:
    """Wrap ``content`` in the Filiova e-mail layout."""
    payouts_url = f"{settings.FRONTEND_URL}/creator/payouts"
    return f"""
    <!DOCTYPE html>
    <html>
        <head><meta charset="utf-8"></head>
        <body style="margin: 0; padding: 40px 20px; background-color: #f3f4f6; font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif;">
            <table width="600" align="center" cellpadding="0" cellspacing="0" style="background-color: white; border-radius: 12px; overflow: hidden;">
                <tr>
                    <td style="background-color: {accent}; padding: 32px 40px; text-align: center;">
                        <h1 style="margin: 0; color: white; font-size: 22px;">{title}</h1>
                    </td>
                </tr>
                <tr>
                    <td style="padding: 40px; color: {BRAND_DARK}; font-size: 16px; line-height: 1.6;">
                        {content}
                        <p style="text-align: center; margin: 30px 0 0 0;">
                            <a href="{payouts_url}" style="background-color: {accent}; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none;">View your payouts</a>
                        </p>
                    </td>
                </tr>
                <tr>
                    <td style="background-color: {BRAND_LIGHT}; padding: 24px 40px; color: #6b7280; font-size: 13px;">
                        The Filiova Team
                    </td>
                </tr>
            </table>
        </body>
    </html>
    """


def _amount(payout: PayoutRequest) -> str:
    return f"${from_cents(payout.amount_requested_cents)}"


class EmailService:
    """Creator-facing payout status notifications."""

    @staticmethod
    def _send(to: str, subject: str, html: str) -> bool:
        try:
            if not settings.RESEND_API_KEY:
                logger.warning("RESEND_API_KEY not configured, skipping email")
                return False

            resend.Emails.send({
                "from": settings.EMAIL_FROM,
                "to": to,
                "subject": subject,
                "html": html,
            })
            logger.info(f"Email '{subject}' sent to {to}")
            return True

        except Exception as e:
            logger.error(f"Failed to send email '{subject}' to {to}: {e}")
            return False

    @staticmethod
    def send_payout_requested_email(user: User, payout: PayoutRequest) -> bool:
        payout_day = payout.payout_date.strftime("%B %d, %Y") if payout.payout_date else "the next payout date"
        content = f"""
        <p>Hi <strong>{user.name}</strong>,</p>
        <p>We received your payout request for <strong>{_amount(payout)}</strong> via {payout.payout_method}.
        The amount is reserved from your available balance while our team reviews it.</p>
        <p>Approved payouts are sent on <strong>{payout_day}</strong>.</p>
        """
        return EmailService._send(
            user.email,
            f"Payout request received: {_amount(payout)}",
            get_email_template("Payout request received", content),
        )

    @staticmethod
    def send_payout_approved_email(user: User, payout: PayoutRequest) -> bool:
        content = f"""
        <p>Hi <strong>{user.name}</strong>,</p>
        <p>Your payout of <strong>{_amount(payout)}</strong> has been approved and is queued for payment.</p>
        """
        return EmailService._send(
            user.email,
            f"Payout approved: {_amount(payout)}",
            get_email_template("Payout approved", content, BRAND_SUCCESS),
        )

    @staticmethod
    def send_payout_rejected_email(user: User, payout: PayoutRequest) -> bool:
        content = f"""
        <p>Hi <strong>{user.name}</strong>,</p>
        <p>Your payout request for <strong>{_amount(payout)}</strong> was not approved.</p>
        <div style="background-color: {BRAND_LIGHT}; border-left: 4px solid {BRAND_DANGER}; padding: 16px; margin: 20px 0;">
            {payout.rejection_reason}
        </div>
        <p>The full amount is back in your available balance. You can submit a new request at any time.</p>
        """
        return EmailService._send(
            user.email,
            "Payout request rejected",
            get_email_template("Payout request rejected", content, BRAND_DANGER),
        )

    @staticmethod
    def send_payout_completed_email(user: User, payout: PayoutRequest) -> bool:
        content = f"""
        <p>Hi <strong>{user.name}</strong>,</p>
        <p>Your payout of <strong>{_amount(payout)}</strong> has been sent.</p>
        <p>Reference: <code>{payout.payment_reference or '-'}</code></p>
        """
        return EmailService._send(
            user.email,
            f"Payout sent: {_amount(payout)}",
            get_email_template("Payout sent", content, BRAND_SUCCESS),
        )

    @staticmethod
    def send_payout_failed_email(user: User, payout: PayoutRequest) -> bool:
        content = f"""
        <p>Hi <strong>{user.name}</strong>,</p>
        <p>We could not complete your payout of <strong>{_amount(payout)}</strong>.</p>
        <p>{payout.rejection_reason or ''}</p>
        <p>The amount has been returned to your available balance. Please check your payout account details.</p>
        """
        return EmailService._send(
            user.email,
            "Payout could not be completed",
            get_email_template("Payout failed", content, BRAND_DANGER),
        )
