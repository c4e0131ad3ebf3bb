"""
Checkout orchestration: consent, then a hosted Stripe Checkout session.
"""
import logging
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from enrollpay.core.audit import record_event
from enrollpay.core.config import settings
from enrollpay.core.errors import ExpiredLink, InvalidRequest, TerminalStateConflict
from enrollpay.models.enrollment import Enrollment, EnrollmentStatus
from enrollpay.services import enrollment_store
from enrollpay.services.consent import parse_signature_data, record_acceptance

logger = logging.getLogger(__name__)

S = EnrollmentStatus

_EPOCH = datetime(1970, 1, 1)

_STATUS_REJECTIONS = {
    S.PAID: "This enrollment has already been paid",
    S.CANCELED: "This enrollment has been canceled",
    S.PROCESSING: "A payment for this enrollment is already processing",
    S.FAILED: "This enrollment link can no longer be used. Please contact us for a new link.",
}


class CheckoutResult(NamedTuple):
    checkout_url: str
    session_id: str


def _epoch_seconds(value: datetime) -> int:
    return int((value - _EPOCH).total_seconds())


def session_expires_at(enrollment_expires_at: datetime, now: Optional[datetime] = None) -> int:
    """
    Stripe `expires_at` for a new session, in epoch seconds.

    The session should not outlive the link, but Stripe refuses anything
    under its minimum lead time, so the minimum wins.
    """
    now = now or datetime.utcnow()
    capped = min(enrollment_expires_at, now + timedelta(minutes=settings.CHECKOUT_SESSION_MAX_MINUTES))
    minimum = now + timedelta(minutes=settings.CHECKOUT_SESSION_MIN_LEAD_MINUTES)
    return max(_epoch_seconds(capped), _epoch_seconds(minimum))


def _check_payable(db: Session, enrollment: Enrollment, crm=None) -> None:
    status = EnrollmentStatus(enrollment.status)
    if status in (S.PAID, S.CANCELED, S.PROCESSING):
        raise TerminalStateConflict(_STATUS_REJECTIONS[status])
    if enrollment.is_past_expiry():
        enrollment_store.expire_if_overdue(db, enrollment, crm=crm)
        raise ExpiredLink()
    if status == S.EXPIRED:
        raise ExpiredLink()
    if status == S.FAILED:
        raise TerminalStateConflict(_STATUS_REJECTIONS[status])


def build_session_params(enrollment: Enrollment, raw_token: str, customer_id: Optional[str]) -> dict:
    app_url = settings.APP_URL.rstrip("/")
    ids = {
        "enrollment_id": str(enrollment.id),
        "crm_record_id": enrollment.crm_record_id,
        "crm_module": enrollment.crm_module,
    }
    params = {
        "mode": "payment",
        "payment_method_types": ["card", "us_bank_account"],
        "billing_address_collection": "required",
        "line_items": [{
            "price_data": {
                "currency": enrollment.currency or "usd",
                "product_data": {
                    "name": settings.CHECKOUT_PRODUCT_NAME,
                    "description": f"Enrollment payment for {enrollment.patient_name or 'Patient'}",
                },
                "unit_amount": enrollment.amount_cents,
            },
            "quantity": 1,
        }],
        "success_url": f"{app_url}/enroll/{raw_token}?status=success",
        "cancel_url": f"{app_url}/enroll/{raw_token}?status=canceled",
        "expires_at": session_expires_at(enrollment.expires_at),
        "metadata": dict(ids, terms_version=enrollment.terms_version, terms_sha256=enrollment.terms_content_hash),
        "payment_intent_data": {"metadata": dict(ids)},
    }
    if customer_id:
        params["customer"] = customer_id
    elif enrollment.patient_email:
        params["customer_email"] = enrollment.patient_email
    return params


def create_checkout_session(
    db: Session,
    raw_token: str,
    terms_accepted: bool,
    client_ip: str,
    user_agent: str,
    signature_data: Optional[str],
    gateway,
    storage,
    crm=None,
) -> CheckoutResult:
    if not terms_accepted:
        raise InvalidRequest("Terms must be accepted")
    signature_png = parse_signature_data(signature_data)

    enrollment = enrollment_store.resolve(db, raw_token)
    _check_payable(db, enrollment, crm=crm)

    # Keeps opened_at <= terms_accepted_at for patients who skip the resolve call
    enrollment_store.mark_opened(db, enrollment)
    if EnrollmentStatus(enrollment.status) != S.OPENED:
        raise TerminalStateConflict()

    record_acceptance(db, enrollment, client_ip, user_agent, signature_png, storage)

    customer_id = None
    if enrollment.patient_email:
        customer_id = gateway.find_or_create_customer(
            enrollment.patient_email,
            name=enrollment.patient_name,
            phone=enrollment.patient_phone,
            metadata={"crm_record_id": enrollment.crm_record_id, "crm_module": enrollment.crm_module},
        )

    session = gateway.create_checkout_session(**build_session_params(enrollment, raw_token, customer_id))

    changed = db.query(Enrollment).filter(
        Enrollment.id == enrollment.id,
        Enrollment.status == S.OPENED,
    ).update({
        "checkout_session_id": session.id,
        "processor_customer_id": customer_id,
        "updated_at": datetime.utcnow(),
    }, synchronize_session=False)
    if not changed:
        db.rollback()
        logger.warning("[CHECKOUT] Enrollment %s left opened before session %s was stored", enrollment.id, session.id)
        raise TerminalStateConflict()

    record_event(db, enrollment.id, "checkout_session_created", {
        "session_id": session.id,
        "customer_id": customer_id,
        "amount_cents": enrollment.amount_cents,
    })
    db.commit()
    db.refresh(enrollment)

    logger.info("[CHECKOUT] Created session %s for enrollment %s", session.id, enrollment.id)
    return CheckoutResult(checkout_url=session.url, session_id=session.id)
