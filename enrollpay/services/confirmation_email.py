"""
Send the payment confirmation email via Brevo using BREVO_API_KEY.
The signed consent document is attached when it could be rendered.
"""
import base64
import html
import logging
from datetime import datetime
from typing import List, Optional

import httpx

from enrollpay.core.config import settings
from enrollpay.models.enrollment import Enrollment, PaymentMethodKind

logger = logging.getLogger(__name__)

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"
ATTACHMENT_NAME = "Enrollment-Agreement.pdf"


def send_transactional_email(
    to_email: str,
    subject: str,
    html_content: str,
    *,
    to_name: Optional[str] = None,
    cc: Optional[List[str]] = None,
    reply_to: Optional[str] = None,
    attachments: Optional[List[dict]] = None,
) -> bool:
    """
    Send a single transactional email using the Brevo API.
    Returns True if sent successfully, False otherwise (e.g. BREVO_API_KEY not set).
    """
    api_key = (settings.BREVO_API_KEY or "").strip()
    if not api_key:
        logger.warning("[EMAIL] BREVO_API_KEY not configured, skipping email to %s", to_email)
        return False

    payload = {
        "sender": {"name": settings.EMAIL_SENDER_NAME, "email": settings.EMAIL_SENDER_ADDRESS},
        "to": [{"email": to_email.strip().lower(), "name": (to_name or "").strip() or None}],
        "subject": subject,
        "htmlContent": html_content,
    }
    if cc:
        payload["cc"] = [{"email": addr} for addr in cc]
    if reply_to:
        payload["replyTo"] = {"email": reply_to, "name": settings.EMAIL_SENDER_NAME}
    if attachments:
        payload["attachment"] = attachments

    headers = {
        "accept": "application/json",
        "content-type": "application/json",
        "api-key": api_key,
    }
    try:
        resp = httpx.post(BREVO_SEND_URL, headers=headers, json=payload, timeout=15.0)
    except httpx.HTTPError as e:
        logger.error("[EMAIL] Brevo request failed: %s", e)
        return False
    if resp.status_code not in (200, 201, 202):
        logger.error("[EMAIL] Brevo rejected email: %s %s", resp.status_code, resp.text)
        return False
    return True


def render_confirmation_html(enrollment: Enrollment, payment_date: datetime) -> str:
    kind = PaymentMethodKind(enrollment.payment_method_kind) if enrollment.payment_method_kind else PaymentMethodKind.CARD
    method = "ACH Bank Transfer" if kind == PaymentMethodKind.ACH else "Credit Card"
    name = html.escape(enrollment.patient_name or "Valued Patient")
    return f"""
    <h1>Enrollment Confirmed</h1>
    <p>Dear {name},</p>
    <p>Thank you for completing your enrollment. Your payment has been successfully processed.</p>
    <table>
      <tr><td>Date</td><td>{payment_date.strftime('%B %d, %Y')}</td></tr>
      <tr><td>Amount</td><td>{enrollment.amount_display}</td></tr>
      <tr><td>Payment Method</td><td>{method}</td></tr>
    </table>
    <p>A copy of your signed agreement is attached to this email for your records.</p>
    """


def send_confirmation_email(enrollment: Enrollment, payment_date: datetime, pdf_bytes: Optional[bytes] = None) -> bool:
    """Email the patient their payment confirmation. Never raises."""
    if not enrollment.patient_email:
        logger.info("[EMAIL] Enrollment %s has no patient email; skipping confirmation", enrollment.id)
        return False

    attachments = None
    if pdf_bytes:
        attachments = [{"name": ATTACHMENT_NAME, "content": base64.b64encode(pdf_bytes).decode("ascii")}]

    sent = send_transactional_email(
        enrollment.patient_email,
        "Your Enrollment Confirmation",
        render_confirmation_html(enrollment, payment_date),
        to_name=enrollment.patient_name,
        cc=settings.get_email_cc(),
        reply_to=settings.EMAIL_REPLY_TO,
        attachments=attachments,
    )
    if sent:
        logger.info("[EMAIL] Confirmation sent for enrollment %s", enrollment.id)
    return sent
