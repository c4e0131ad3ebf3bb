"""
Stripe settlement webhook processing.

Verifies the signature, short-circuits events already in the ledger,
applies the status transition through the guarded store functions and
fires side effects only when this delivery actually moved the row. The
ledger row is written last so a crash before it lets Stripe's retry redo
the (idempotent) transition.
"""
import json
import logging
from typing import Any, Callable, Dict, NamedTuple, Optional
from uuid import UUID

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollpay.core.audit import record_event
from enrollpay.core.config import settings
from enrollpay.core.errors import ConfigurationError, DuplicateEvent, InvalidPayload, SignatureVerificationFailed
from enrollpay.models.enrollment import Enrollment, EnrollmentStatus, PaymentMethodKind
from enrollpay.models.stripe_event import ProcessedStripeEvent
from enrollpay.services import enrollment_store
from enrollpay.services.consent import finalize_consent_document

logger = logging.getLogger(__name__)

S = EnrollmentStatus

ASYNC_PAYMENT_STATUS = "unpaid"
ACH_METHOD_TYPE = "us_bank_account"


class SettlementSideEffects(NamedTuple):
    crm: Any
    storage: Any
    mailer: Callable[..., bool]


class WebhookResult(NamedTuple):
    event_id: str
    event_type: str
    duplicate: bool = False
    transitioned: bool = False

    def to_response(self) -> Dict[str, Any]:
        body = {"received": True}
        if self.duplicate:
            body["duplicate"] = True
        return body


def verify_and_parse(raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET not configured")
        raise ConfigurationError("Webhook secret not configured")
    if not signature_header:
        raise SignatureVerificationFailed("Missing Stripe-Signature header")

    payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
    try:
        stripe.WebhookSignature.verify_header(
            payload, signature_header, secret, tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("[WEBHOOK] Signature verification failed: %s", e)
        raise SignatureVerificationFailed()

    try:
        event = json.loads(payload)
    except ValueError:
        raise InvalidPayload()
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise InvalidPayload("Event id and type are required")
    return event


def _enrollment_from_metadata(db: Session, obj: Dict[str, Any]) -> Optional[Enrollment]:
    raw_id = (obj.get("metadata") or {}).get("enrollment_id")
    if not raw_id:
        return None
    try:
        enrollment_id = UUID(str(raw_id))
    except ValueError:
        logger.warning("[WEBHOOK] Ignoring malformed enrollment_id %r", raw_id)
        return None
    return db.query(Enrollment).filter(Enrollment.id == enrollment_id).first()


def _enrollment_for_payment_intent(db: Session, intent: Dict[str, Any]) -> Optional[Enrollment]:
    enrollment = _enrollment_from_metadata(db, intent)
    if enrollment is None and intent.get("id"):
        enrollment = db.query(Enrollment).filter(Enrollment.payment_intent_id == intent["id"]).first()
    return enrollment


def is_async_payment(session: Dict[str, Any]) -> bool:
    """ACH debits complete the session before the money has moved."""
    if session.get("payment_status") == ASYNC_PAYMENT_STATUS:
        return True
    return (session.get("payment_method_types") or []) == [ACH_METHOD_TYPE]


def _payment_intent_id(obj: Dict[str, Any]) -> Optional[str]:
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


def _push_crm(effects: SettlementSideEffects, enrollment: Enrollment, **note) -> None:
    try:
        effects.crm.push(enrollment, **note)
    except Exception as e:
        logger.exception("[WEBHOOK] CRM push failed for enrollment %s: %s", enrollment.id, e)


def _on_paid(db: Session, enrollment: Enrollment, effects: SettlementSideEffects) -> None:
    # Each effect runs even if an earlier one failed; the transition is already committed
    _push_crm(
        effects,
        enrollment,
        note_title="Payment received",
        note_content=f"Enrollment payment of {enrollment.amount_display} confirmed.",
    )
    payment_date = enrollment.paid_at
    try:
        pdf_bytes = finalize_consent_document(db, enrollment, payment_date, effects.storage)
    except Exception as e:
        db.rollback()
        logger.exception("[WEBHOOK] Consent document failed for enrollment %s: %s", enrollment.id, e)
        pdf_bytes = None
    try:
        effects.mailer(enrollment, payment_date, pdf_bytes)
    except Exception as e:
        logger.exception("[WEBHOOK] Confirmation email failed for enrollment %s: %s", enrollment.id, e)


# ---------------------------------------------------------------------------
# Event handlers. Each returns True when this delivery changed the enrollment.
# ---------------------------------------------------------------------------

def _handle_checkout_completed(db: Session, event: Dict[str, Any], effects: SettlementSideEffects) -> bool:
    session = event["data"]["object"]
    enrollment = _enrollment_from_metadata(db, session)
    if enrollment is None:
        logger.warning("[WEBHOOK] checkout.session.completed %s has no known enrollment", session.get("id"))
        return False

    if session.get("id") != enrollment.checkout_session_id:
        # A superseded session (link rotated since) completed; money moved but the enrollment did not
        record_event(db, enrollment.id, "orphaned_checkout_completed", {
            "session_id": session.get("id"),
            "current_session_id": enrollment.checkout_session_id,
            "payment_intent_id": _payment_intent_id(session),
            "event_id": event["id"],
        }, commit=True)
        logger.warning("[WEBHOOK] Orphaned checkout session %s for enrollment %s", session.get("id"), enrollment.id)
        return False

    intent_id = _payment_intent_id(session)
    data = {
        "session_id": session["id"],
        "payment_intent_id": intent_id,
        "payment_status": session.get("payment_status"),
        "amount_total": session.get("amount_total"),
        "event_id": event["id"],
    }

    if is_async_payment(session):
        data["payment_method"] = PaymentMethodKind.ACH
        changed = enrollment_store.mark_processing(db, enrollment, session["id"], intent_id, data)
        if changed:
            _push_crm(effects, enrollment, note_title="ACH payment processing",
                      note_content="Bank debit initiated; awaiting settlement.")
        return changed

    data["payment_method"] = PaymentMethodKind.CARD
    changed = enrollment_store.confirm_paid(
        db, enrollment, "checkout_completed",
        within={S.OPENED, S.FAILED, S.EXPIRED},
        payment_intent_id=intent_id,
        payment_method_kind=PaymentMethodKind.CARD,
        session_id=session["id"],
        event_data=data,
    )
    if changed:
        _on_paid(db, enrollment, effects)
    return changed


def _handle_async_succeeded(db: Session, event: Dict[str, Any], effects: SettlementSideEffects) -> bool:
    obj = event["data"]["object"]
    if event["type"] == "payment_intent.succeeded":
        enrollment = _enrollment_for_payment_intent(db, obj)
        intent_id = obj.get("id")
        session_id = None
    else:
        enrollment = _enrollment_from_metadata(db, obj)
        intent_id = _payment_intent_id(obj)
        session_id = obj.get("id")
    if enrollment is None:
        logger.info("[WEBHOOK] %s for unknown enrollment; ignoring", event["type"])
        return False
    if intent_id and enrollment.payment_intent_id and intent_id != enrollment.payment_intent_id:
        logger.warning("[WEBHOOK] %s for stale payment intent %s on enrollment %s", event["type"], intent_id, enrollment.id)
        return False

    changed = enrollment_store.confirm_paid(
        db, enrollment, "payment_succeeded",
        within={S.PROCESSING},
        session_id=session_id,
        event_data={"payment_intent_id": intent_id, "source_event": event["type"], "event_id": event["id"]},
    )
    if changed:
        _on_paid(db, enrollment, effects)
    return changed


def _handle_payment_failed(db: Session, event: Dict[str, Any], effects: SettlementSideEffects) -> bool:
    obj = event["data"]["object"]
    if event["type"] == "payment_intent.payment_failed":
        enrollment = _enrollment_for_payment_intent(db, obj)
        error = (obj.get("last_payment_error") or {}).get("message")
        intent_id = obj.get("id")
    else:
        enrollment = _enrollment_from_metadata(db, obj)
        if enrollment is not None and obj.get("id") != enrollment.checkout_session_id:
            logger.warning("[WEBHOOK] Async failure for superseded session %s", obj.get("id"))
            return False
        error = "Bank debit failed"
        intent_id = _payment_intent_id(obj)
    if enrollment is None:
        logger.info("[WEBHOOK] %s for unknown enrollment; ignoring", event["type"])
        return False
    if not enrollment.checkout_session_id:
        # Link was rotated after this payment attempt started
        logger.warning("[WEBHOOK] %s for enrollment %s with no current session; ignoring", event["type"], enrollment.id)
        return False
    if intent_id and enrollment.payment_intent_id and intent_id != enrollment.payment_intent_id:
        logger.warning("[WEBHOOK] %s for stale payment intent %s on enrollment %s", event["type"], intent_id, enrollment.id)
        return False

    changed = enrollment_store.mark_failed(db, enrollment, error, {
        "payment_intent_id": intent_id,
        "source_event": event["type"],
        "event_id": event["id"],
    })
    if changed:
        _push_crm(effects, enrollment, note_title="Payment failed", note_content=error or "Payment failed")
    return changed


def _handle_session_expired(db: Session, event: Dict[str, Any], effects: SettlementSideEffects) -> bool:
    session = event["data"]["object"]
    enrollment = _enrollment_from_metadata(db, session)
    if enrollment is None or session.get("id") != enrollment.checkout_session_id:
        return False
    changed = enrollment_store.mark_expired(
        db, enrollment, event_type="checkout_expired", within={S.PROCESSING},
        event_data={"session_id": session.get("id"), "event_id": event["id"]},
    )
    if changed:
        _push_crm(effects, enrollment)
    return changed


HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "checkout.session.async_payment_succeeded": _handle_async_succeeded,
    "payment_intent.succeeded": _handle_async_succeeded,
    "checkout.session.async_payment_failed": _handle_payment_failed,
    "payment_intent.payment_failed": _handle_payment_failed,
    "checkout.session.expired": _handle_session_expired,
}


def _ensure_unprocessed(db: Session, event_id: str) -> None:
    if db.query(ProcessedStripeEvent).filter(ProcessedStripeEvent.stripe_event_id == event_id).first():
        raise DuplicateEvent()


def _mark_processed(db: Session, event_id: str, event_type: str) -> None:
    try:
        db.add(ProcessedStripeEvent(stripe_event_id=event_id, event_type=event_type))
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event got there first
        db.rollback()
        raise DuplicateEvent()


def handle_webhook(
    db: Session,
    raw_body: bytes,
    signature_header: Optional[str],
    effects: SettlementSideEffects,
) -> WebhookResult:
    event = verify_and_parse(raw_body, signature_header)
    event_id, event_type = event["id"], event["type"]

    try:
        _ensure_unprocessed(db, event_id)
    except DuplicateEvent:
        logger.info("[WEBHOOK] Event %s already processed", event_id)
        return WebhookResult(event_id, event_type, duplicate=True)

    handler = HANDLERS.get(event_type)
    transitioned = False
    if handler is None:
        logger.info("[WEBHOOK] Unhandled event type %s (%s)", event_type, event_id)
    else:
        if not isinstance((event.get("data") or {}).get("object"), dict):
            raise InvalidPayload("Event data.object is required")
        transitioned = handler(db, event, effects)
        logger.info("[WEBHOOK] %s %s -> transitioned=%s", event_type, event_id, transitioned)

    try:
        _mark_processed(db, event_id, event_type)
    except DuplicateEvent:
        return WebhookResult(event_id, event_type, duplicate=True, transitioned=transitioned)

    return WebhookResult(event_id, event_type, transitioned=transitioned)
