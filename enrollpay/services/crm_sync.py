"""
Push enrollment lifecycle changes to the originating Zoho CRM record.

Best effort: a failed push is logged and reported as False. The next
transition pushes the full current state again, which is the only retry.
"""
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from enrollpay.core.config import settings
from enrollpay.models.enrollment import Enrollment, EnrollmentStatus, PaymentMethodKind

logger = logging.getLogger(__name__)

MANUAL_MODULE = "manual"

STATUS_LABELS = {
    EnrollmentStatus.CREATED: "Created",
    EnrollmentStatus.SENT: "Sent",
    EnrollmentStatus.OPENED: "Opened",
    EnrollmentStatus.PROCESSING: "Processing",
    EnrollmentStatus.PAID: "Paid",
    EnrollmentStatus.FAILED: "Failed",
    EnrollmentStatus.EXPIRED: "Expired",
    EnrollmentStatus.CANCELED: "Canceled",
}


class CRMError(Exception):
    pass


def _zoho_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat() + "+00:00"


def build_record_fields(enrollment: Enrollment) -> Dict[str, Any]:
    """Map the enrollment's current state onto CRM record fields."""
    status = EnrollmentStatus(enrollment.status)
    fields: Dict[str, Any] = {"Enrollment_Status": STATUS_LABELS[status]}

    if status == EnrollmentStatus.CREATED:
        fields["Enrollment_Link_Expires"] = _zoho_datetime(enrollment.expires_at)
        fields["Enrollment_Token_Last4"] = enrollment.token_suffix
    if enrollment.payment_method_kind:
        kind = PaymentMethodKind(enrollment.payment_method_kind)
        fields["Payment_Method_Stripe"] = "ACH" if kind == PaymentMethodKind.ACH else "Card"
    if enrollment.checkout_session_id and status in (EnrollmentStatus.PROCESSING, EnrollmentStatus.PAID):
        fields["Stripe_Session_ID"] = enrollment.checkout_session_id
    if status == EnrollmentStatus.PROCESSING:
        fields["Processing_Date"] = _zoho_datetime(enrollment.processing_at)
    elif status == EnrollmentStatus.PAID:
        fields["Payment_Date"] = _zoho_datetime(enrollment.paid_at)
    elif status == EnrollmentStatus.FAILED:
        fields["Payment_Failed_Date"] = _zoho_datetime(enrollment.failed_at)
    elif status == EnrollmentStatus.EXPIRED:
        fields["Expired_Date"] = _zoho_datetime(enrollment.expired_at)

    return {k: v for k, v in fields.items() if v is not None}


class ZohoCRMClient:
    """Minimal Zoho CRM v6 client using a long-lived refresh token."""

    # Refresh a little before Zoho's stated expiry
    _EXPIRY_MARGIN_SECONDS = 60

    def __init__(self, http_client: Optional[httpx.Client] = None):
        self._http = http_client
        self._access_token: Optional[str] = None
        self._access_token_expires: float = 0.0

    @property
    def http(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=15.0)
        return self._http

    @property
    def configured(self) -> bool:
        return bool(settings.ZOHO_CLIENT_ID and settings.ZOHO_CLIENT_SECRET and settings.ZOHO_REFRESH_TOKEN)

    def get_access_token(self) -> str:
        if self._access_token and time.time() < self._access_token_expires:
            return self._access_token
        if not self.configured:
            raise CRMError("Zoho credentials not configured")

        resp = self.http.post(
            f"{settings.ZOHO_ACCOUNTS_URL.rstrip('/')}/oauth/v2/token",
            data={
                "refresh_token": settings.ZOHO_REFRESH_TOKEN,
                "client_id": settings.ZOHO_CLIENT_ID,
                "client_secret": settings.ZOHO_CLIENT_SECRET,
                "grant_type": "refresh_token",
            },
        )
        if resp.status_code != 200:
            raise CRMError(f"Failed to refresh Zoho token: {resp.status_code} {resp.text}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise CRMError(f"Zoho token response was not JSON: {resp.text[:200]}") from e
        if not isinstance(payload, dict):
            raise CRMError(f"Unexpected Zoho token response: {resp.text[:200]}")
        token = payload.get("access_token")
        if not token:
            # Zoho answers 200 with {"error": "..."} for bad refresh tokens
            raise CRMError(f"Failed to refresh Zoho token: {payload.get('error', 'no access_token')}")

        self._access_token = token
        self._access_token_expires = time.time() + int(payload.get("expires_in", 3600)) - self._EXPIRY_MARGIN_SECONDS
        return token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Zoho-oauthtoken {self.get_access_token()}"}

    def update_record(self, module: str, record_id: str, fields: Dict[str, Any]) -> None:
        resp = self.http.put(
            f"{settings.ZOHO_API_URL.rstrip('/')}/{module}/{record_id}",
            headers=self._headers(),
            json={"data": [fields]},
        )
        if resp.status_code >= 300:
            raise CRMError(f"Failed to update Zoho {module}/{record_id}: {resp.status_code} {resp.text}")

    def add_note(self, module: str, record_id: str, title: str, content: str) -> None:
        resp = self.http.post(
            f"{settings.ZOHO_API_URL.rstrip('/')}/Notes",
            headers=self._headers(),
            json={"data": [{
                "Parent_Id": record_id,
                "se_module": module,
                "Note_Title": title,
                "Note_Content": content,
            }]},
        )
        if resp.status_code >= 300:
            raise CRMError(f"Failed to add Zoho note on {module}/{record_id}: {resp.status_code} {resp.text}")


class CRMSync:
    def __init__(self, client: Optional[ZohoCRMClient] = None):
        self.client = client or ZohoCRMClient()

    def push(self, enrollment: Enrollment, note_title: Optional[str] = None, note_content: Optional[str] = None) -> bool:
        """
        Push current status to the CRM record. Never raises.

        Returns True when the record update went through (the note is
        secondary and its failure only gets logged).
        """
        if enrollment.crm_module == MANUAL_MODULE or not enrollment.crm_record_id:
            return False
        if not self.client.configured:
            logger.warning("[CRM] Zoho not configured; skipping push for enrollment %s", enrollment.id)
            return False

        module, record_id = enrollment.crm_module, enrollment.crm_record_id
        try:
            fields = build_record_fields(enrollment)
            self.client.update_record(module, record_id, fields)
            logger.info("[CRM] Updated %s/%s -> %s", module, record_id, fields["Enrollment_Status"])
        except (CRMError, httpx.HTTPError, ValueError) as e:
            logger.error("[CRM] Push failed for enrollment %s: %s", enrollment.id, e)
            return False

        if note_title:
            try:
                self.client.add_note(module, record_id, note_title, note_content or "")
            except (CRMError, httpx.HTTPError) as e:
                logger.error("[CRM] Note failed for enrollment %s: %s", enrollment.id, e)
        return True
