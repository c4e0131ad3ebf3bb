"""
Consent capture and the consent document.

Acceptance is recorded before the patient is sent to checkout. The PDF is
rendered once the payment is confirmed, so it can carry the confirmation
timestamp next to the acceptance evidence.
"""
import base64
import binascii
import logging
import time
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from enrollpay.core.audit import record_event
from enrollpay.core.encryption import decrypt_bytes, encrypt_bytes
from enrollpay.core.errors import InvalidRequest, TerminalStateConflict, UpstreamProcessorError
from enrollpay.models.enrollment import Enrollment, EnrollmentStatus
from enrollpay.services.consent_pdf import render_consent_pdf
from enrollpay.services.enrollment_store import get_policy_for_enrollment
from enrollpay.services.storage import StorageError

logger = logging.getLogger(__name__)

SIGNATURE_DATA_PREFIX = "data:image/png;base64,"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"

# Browsers send a data URL per stroke canvas; anything past this is not a signature
MAX_SIGNATURE_BYTES = 512 * 1024


def parse_signature_data(signature_data: Optional[str]) -> Optional[bytes]:
    """Decode a `data:image/png;base64,...` URL into PNG bytes. Empty means no signature."""
    if not signature_data:
        return None
    if not signature_data.startswith(SIGNATURE_DATA_PREFIX):
        raise InvalidRequest("Invalid signature data")
    try:
        png = base64.b64decode(signature_data[len(SIGNATURE_DATA_PREFIX):], validate=True)
    except (binascii.Error, ValueError):
        raise InvalidRequest("Invalid signature data")
    if not png.startswith(PNG_MAGIC) or len(png) > MAX_SIGNATURE_BYTES:
        raise InvalidRequest("Invalid signature data")
    return png


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def store_signature(storage, enrollment: Enrollment, png: bytes) -> str:
    key = f"signatures/{enrollment.id}/{_timestamp_ms()}-signature.png.enc"
    try:
        return storage.put(key, encrypt_bytes(png), content_type="application/octet-stream")
    except StorageError as e:
        logger.error("[CONSENT] Signature upload failed for enrollment %s: %s", enrollment.id, e)
        raise UpstreamProcessorError("Could not save your signature. Please try again.")


def record_acceptance(
    db: Session,
    enrollment: Enrollment,
    client_ip: str,
    user_agent: str,
    signature_png: Optional[bytes],
    storage,
) -> None:
    """
    Bind the policy snapshot to this patient's acceptance.

    Only an opened enrollment can accept terms; a newer acceptance replaces
    the previous one (the patient came back from an abandoned checkout).
    """
    signature_ref = store_signature(storage, enrollment, signature_png) if signature_png else None
    now = datetime.utcnow()

    changed = db.query(Enrollment).filter(
        Enrollment.id == enrollment.id,
        Enrollment.status == EnrollmentStatus.OPENED,
    ).update({
        "terms_accepted_at": now,
        "consent_ip": client_ip,
        "consent_user_agent": user_agent,
        "signature_blob_ref": signature_ref,
        "updated_at": now,
    }, synchronize_session=False)

    if not changed:
        db.rollback()
        db.refresh(enrollment)
        raise TerminalStateConflict()

    record_event(db, enrollment.id, "terms_accepted", {
        "ip": client_ip,
        "user_agent": user_agent,
        "terms_version": enrollment.terms_version,
        "terms_sha256": enrollment.terms_content_hash,
        "has_signature": signature_ref is not None,
        "timestamp": now,
    })
    db.commit()
    db.refresh(enrollment)
    logger.info("[CONSENT] Terms accepted for enrollment %s (signature=%s)", enrollment.id, signature_ref is not None)


def load_signature(storage, enrollment: Enrollment) -> Optional[bytes]:
    if not enrollment.signature_blob_ref:
        return None
    try:
        return decrypt_bytes(storage.get(enrollment.signature_blob_ref))
    except (StorageError, FileNotFoundError, ValueError) as e:
        logger.error("[CONSENT] Could not load signature for enrollment %s: %s", enrollment.id, e)
        return None


def finalize_consent_document(db: Session, enrollment: Enrollment, payment_date: datetime, storage) -> Optional[bytes]:
    """
    Render and store the consent PDF for a paid enrollment.

    Returns the PDF bytes even when the upload fails, so the confirmation
    email can still carry it. Returns None if rendering fails. Never raises.
    """
    policy = get_policy_for_enrollment(db, enrollment)
    signature_png = load_signature(storage, enrollment)

    try:
        pdf_bytes = render_consent_pdf(
            enrollment,
            policy.terms_text if policy else None,
            policy.privacy_text if policy else None,
            signature_png,
            payment_date,
        )
    except Exception as e:
        logger.exception("[CONSENT] PDF render failed for enrollment %s: %s", enrollment.id, e)
        return None

    key = f"consent-documents/{enrollment.id}/{_timestamp_ms()}-consent.pdf"
    try:
        storage.put(key, pdf_bytes, content_type="application/pdf")
    except StorageError as e:
        logger.error("[CONSENT] PDF upload failed for enrollment %s: %s", enrollment.id, e)
        return pdf_bytes

    try:
        enrollment.consent_document_ref = key
        record_event(db, enrollment.id, "consent_document_created", {
            "document_ref": key,
            "size_bytes": len(pdf_bytes),
            "payment_date": payment_date,
        })
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("[CONSENT] Could not record consent document for enrollment %s: %s", enrollment.id, e)
    return pdf_bytes
