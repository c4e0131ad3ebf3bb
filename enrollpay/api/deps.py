from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import logging

from enrollpay.core.config import settings
from enrollpay.core.errors import ConfigurationError, Unauthorized
from enrollpay.core.security import constant_time_equals, verify_hmac_signature
from enrollpay.db.session import get_db
from enrollpay.services.confirmation_email import send_confirmation_email
from enrollpay.services.crm_sync import CRMSync
from enrollpay.services.storage import S3Storage
from enrollpay.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

__all__ = [
    "get_db", "require_admin", "verify_crm_request",
    "get_gateway", "get_storage", "get_crm_sync", "get_mailer",
]


def require_admin(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> None:
    """Bearer token check for the operator API."""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise ConfigurationError("Admin API is not configured")
    if credentials is None or not constant_time_equals(credentials.credentials, expected):
        raise Unauthorized()


async def verify_crm_request(request: Request) -> None:
    """
    Authenticate the CRM workflow calling POST /enrollments.

    Accepts either the shared secret header or an HMAC signature over
    "{timestamp}.{raw body}" with a millisecond timestamp.
    """
    secret = settings.ENROLLMENT_SHARED_SECRET
    if not secret:
        logger.error("[CRM] ENROLLMENT_SHARED_SECRET not configured")
        raise ConfigurationError("Enrollment ingress is not configured")

    shared = request.headers.get("x-shared-secret")
    if shared is not None:
        if constant_time_equals(shared, secret):
            return
        raise Unauthorized()

    signature = request.headers.get("x-hmac-signature")
    timestamp = request.headers.get("x-hmac-timestamp")
    if signature and timestamp:
        body = await request.body()
        if verify_hmac_signature(body, signature, timestamp, secret, settings.CRM_HMAC_MAX_AGE_SECONDS):
            return
        logger.warning("[CRM] HMAC verification failed")
    raise Unauthorized()


# Collaborator providers; tests replace these through app.dependency_overrides

def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_storage() -> S3Storage:
    return S3Storage()


_crm_sync: Optional[CRMSync] = None


def get_crm_sync() -> CRMSync:
    # One instance per process so the Zoho access token cache is shared
    global _crm_sync
    if _crm_sync is None:
        _crm_sync = CRMSync()
    return _crm_sync


def get_mailer():
    return send_confirmation_email
