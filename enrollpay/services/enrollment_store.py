"""
Enrollment persistence and status transitions.

Every transition is a conditional UPDATE guarded by the statuses the
transition table allows as sources. A function returns True only when its
update changed the row; callers fire side effects (CRM push, email) on True
and treat False as "someone else already did it".
"""
import hashlib
import logging
import time
from datetime import datetime, timedelta
from typing import Iterable, List, NamedTuple, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollpay.core.audit import record_event
from enrollpay.core.config import settings
from enrollpay.core.errors import InvalidRequest, InvalidToken, NotFound, TerminalStateConflict
from enrollpay.core.state_machine import (
    ACTIVE_LINK_STATUSES,
    LIVE_STATUSES,
    REGENERABLE_STATUSES,
    allowed_sources,
)
from enrollpay.core.tokens import IssuedToken, hash_token, is_well_formed, issue_token
from enrollpay.models.enrollment import Enrollment, EnrollmentStatus, PaymentMethodKind
from enrollpay.models.policy import Policy

logger = logging.getLogger(__name__)

S = EnrollmentStatus

MANUAL_MODULE = "manual"

# Fields cleared when a link is rotated; the new link starts from scratch
_ROTATION_RESET = (
    "opened_at",
    "terms_accepted_at",
    "processing_at",
    "paid_at",
    "failed_at",
    "expired_at",
    "canceled_at",
    "consent_ip",
    "consent_user_agent",
    "signature_blob_ref",
    "consent_document_ref",
    "checkout_session_id",
    "payment_intent_id",
    "processor_customer_id",
    "payment_method_kind",
)


class PolicySnapshot(NamedTuple):
    policy_id: Optional[UUID]
    terms_url: str
    privacy_url: Optional[str]
    terms_version: str
    terms_content_hash: str
    name: str = "custom"


class IssuedLink(NamedTuple):
    enrollment: Enrollment
    token: IssuedToken
    regenerated: bool

    @property
    def url(self) -> str:
        return enrollment_url(self.token.raw_token)


def enrollment_url(raw_token: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/enroll/{raw_token}"


def compute_policy_hash(terms_text: Optional[str], terms_url: str) -> str:
    """SHA-256 of the terms text, or of the URL when the policy has no inline text."""
    source = terms_text if terms_text else terms_url
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def resolve(db: Session, raw_token) -> Enrollment:
    """Exact lookup by token digest. Malformed and unknown tokens look the same."""
    if not is_well_formed(raw_token):
        raise InvalidToken()
    enrollment = db.query(Enrollment).filter(Enrollment.token_hash == hash_token(raw_token)).first()
    if enrollment is None:
        raise InvalidToken()
    return enrollment


def get_enrollment(db: Session, enrollment_id: UUID) -> Enrollment:
    enrollment = db.query(Enrollment).filter(Enrollment.id == enrollment_id).first()
    if enrollment is None:
        raise NotFound("Enrollment not found")
    return enrollment


def find_live_for_crm(db: Session, crm_module: str, crm_record_id: str) -> Optional[Enrollment]:
    return db.query(Enrollment).filter(
        Enrollment.crm_module == crm_module,
        Enrollment.crm_record_id == crm_record_id,
        Enrollment.status.in_(list(LIVE_STATUSES)),
    ).first()


def get_policy_for_enrollment(db: Session, enrollment: Enrollment) -> Optional[Policy]:
    if not enrollment.policy_id:
        return None
    return db.query(Policy).filter(Policy.id == enrollment.policy_id).first()


def resolve_policy_snapshot(
    db: Session,
    policy_id: Optional[UUID] = None,
    terms_url: Optional[str] = None,
    privacy_url: Optional[str] = None,
    terms_version: Optional[str] = None,
    terms_sha256: Optional[str] = None,
) -> PolicySnapshot:
    """
    Pick the policy an enrollment is issued under.

    An explicit policy_id wins, then explicit terms fields, then the active
    default policy.
    """
    if policy_id:
        policy = db.query(Policy).filter(Policy.id == policy_id, Policy.is_active.is_(True)).first()
        if policy is None:
            raise InvalidRequest("Specified policy not found or inactive")
        return _snapshot_from_policy(policy)

    if terms_url and terms_sha256:
        if not terms_version:
            raise InvalidRequest("terms_version is required when terms_url and terms_sha256 are provided")
        return PolicySnapshot(
            policy_id=None,
            terms_url=terms_url,
            privacy_url=privacy_url,
            terms_version=terms_version,
            terms_content_hash=terms_sha256.lower(),
        )

    policy = db.query(Policy).filter(Policy.is_default.is_(True), Policy.is_active.is_(True)).first()
    if policy is None:
        raise InvalidRequest(
            "No default policy found. Create a policy first, or pass terms_url, "
            "privacy_url, terms_version, and terms_sha256."
        )
    return _snapshot_from_policy(policy)


def _snapshot_from_policy(policy: Policy) -> PolicySnapshot:
    return PolicySnapshot(
        policy_id=policy.id,
        terms_url=policy.terms_url,
        privacy_url=policy.privacy_url,
        terms_version=policy.version,
        terms_content_hash=policy.terms_content_hash,
        name=policy.name,
    )


# ---------------------------------------------------------------------------
# Guarded transitions
# ---------------------------------------------------------------------------

def _transition(
    db: Session,
    enrollment: Enrollment,
    target: EnrollmentStatus,
    values: dict,
    event_type: str,
    event_data: Optional[dict] = None,
    within: Optional[Iterable[EnrollmentStatus]] = None,
    extra_filters: tuple = (),
) -> bool:
    sources = allowed_sources(target, within)
    values = dict(values)
    values["status"] = target
    values["updated_at"] = datetime.utcnow()

    changed = db.query(Enrollment).filter(
        Enrollment.id == enrollment.id,
        Enrollment.status.in_(list(sources)),
        *extra_filters,
    ).update(values, synchronize_session=False)

    if changed:
        record_event(db, enrollment.id, event_type, event_data)
    db.commit()
    db.refresh(enrollment)

    if changed:
        logger.info("[ENROLLMENT] %s -> %s (%s)", enrollment.id, target.value, event_type)
    return bool(changed)


def mark_sent(db: Session, enrollment: Enrollment) -> bool:
    return _transition(db, enrollment, S.SENT, {}, "sent", within={S.CREATED})


def mark_opened(db: Session, enrollment: Enrollment, now: Optional[datetime] = None) -> bool:
    """First view of the link. Repeated calls are no-ops."""
    now = now or datetime.utcnow()
    return _transition(
        db, enrollment, S.OPENED,
        {"opened_at": now},
        "opened", {"timestamp": now},
        within={S.CREATED, S.SENT},
        extra_filters=(Enrollment.opened_at.is_(None),),
    )


def mark_expired(
    db: Session,
    enrollment: Enrollment,
    event_type: str = "expired",
    within: Iterable[EnrollmentStatus] = ACTIVE_LINK_STATUSES,
    event_data: Optional[dict] = None,
) -> bool:
    now = datetime.utcnow()
    data = {"expires_at": enrollment.expires_at, "previous_status": enrollment.status}
    data.update(event_data or {})
    return _transition(db, enrollment, S.EXPIRED, {"expired_at": now}, event_type, data, within=within)


def mark_processing(
    db: Session,
    enrollment: Enrollment,
    session_id: str,
    payment_intent_id: Optional[str],
    event_data: Optional[dict] = None,
) -> bool:
    """Asynchronous (ACH) completion of the enrollment's current checkout session."""
    return _transition(
        db, enrollment, S.PROCESSING,
        {
            "processing_at": datetime.utcnow(),
            "payment_intent_id": payment_intent_id,
            "payment_method_kind": PaymentMethodKind.ACH,
        },
        "checkout_completed", event_data,
        extra_filters=(Enrollment.checkout_session_id == session_id,),
    )


def confirm_paid(
    db: Session,
    enrollment: Enrollment,
    event_type: str,
    within: Iterable[EnrollmentStatus],
    payment_intent_id: Optional[str] = None,
    payment_method_kind: Optional[PaymentMethodKind] = None,
    session_id: Optional[str] = None,
    event_data: Optional[dict] = None,
) -> bool:
    values = {"paid_at": datetime.utcnow()}
    if payment_intent_id:
        values["payment_intent_id"] = payment_intent_id
    if payment_method_kind:
        values["payment_method_kind"] = payment_method_kind
    filters = (Enrollment.checkout_session_id == session_id,) if session_id else ()
    return _transition(
        db, enrollment, S.PAID, values, event_type, event_data,
        within=within, extra_filters=filters,
    )


def mark_failed(db: Session, enrollment: Enrollment, error_message: Optional[str], event_data: Optional[dict] = None) -> bool:
    data = {"error": error_message or "Payment failed"}
    data.update(event_data or {})
    return _transition(
        db, enrollment, S.FAILED,
        {"failed_at": datetime.utcnow()},
        "payment_failed", data,
        within=LIVE_STATUSES,
    )


def mark_canceled(db: Session, enrollment: Enrollment, reason: Optional[str] = None) -> bool:
    return _transition(
        db, enrollment, S.CANCELED,
        {"canceled_at": datetime.utcnow()},
        "canceled", {"reason": reason, "previous_status": enrollment.status},
        within=ACTIVE_LINK_STATUSES,
    )


def rotate_token(
    db: Session,
    enrollment: Enrollment,
    sources: Iterable[EnrollmentStatus],
    expires_at: datetime,
    snapshot: Optional[PolicySnapshot] = None,
    amount_cents: Optional[int] = None,
    currency: Optional[str] = None,
    event_data: Optional[dict] = None,
) -> Optional[IssuedToken]:
    """
    Replace the link token and restart the enrollment at `created`.

    Returns the new token, or None when the enrollment was no longer in one
    of `sources`. Lifecycle events and stored documents are kept. May raise
    IntegrityError when another live enrollment holds the same CRM record.
    """
    token = issue_token()
    previous_status = enrollment.status
    values = {name: None for name in _ROTATION_RESET}
    values.update({
        "token_hash": token.token_hash,
        "token_suffix": token.suffix,
        "status": S.CREATED,
        "expires_at": expires_at,
        "updated_at": datetime.utcnow(),
    })
    if amount_cents is not None:
        values["amount_cents"] = amount_cents
    if currency:
        values["currency"] = currency.lower()
    if snapshot is not None:
        values.update({
            "policy_id": snapshot.policy_id,
            "terms_url": snapshot.terms_url,
            "privacy_url": snapshot.privacy_url,
            "terms_version": snapshot.terms_version,
            "terms_content_hash": snapshot.terms_content_hash,
        })

    changed = db.query(Enrollment).filter(
        Enrollment.id == enrollment.id,
        Enrollment.status.in_([EnrollmentStatus(s) for s in sources]),
    ).update(values, synchronize_session=False)
    if not changed:
        db.rollback()
        db.refresh(enrollment)
        return None

    data = {
        "previous_status": previous_status,
        "expires_at": expires_at,
        "token_last4": token.suffix,
    }
    data.update(event_data or {})
    record_event(db, enrollment.id, "regenerated", data)
    db.commit()
    db.refresh(enrollment)
    logger.info("[ENROLLMENT] %s regenerated from %s (token ...%s)", enrollment.id, previous_status, token.suffix)
    return token


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------

def _insert(
    db: Session,
    crm_module: str,
    crm_record_id: str,
    amount_cents: int,
    currency: str,
    expires_at: datetime,
    snapshot: PolicySnapshot,
    patient_name: Optional[str],
    patient_email: Optional[str],
    patient_phone: Optional[str],
    patient_id: Optional[UUID],
    source: str,
) -> IssuedLink:
    token = issue_token()
    enrollment = Enrollment(
        crm_module=crm_module,
        crm_record_id=crm_record_id,
        patient_name=patient_name,
        patient_email=patient_email,
        patient_phone=patient_phone,
        patient_id=patient_id,
        amount_cents=amount_cents,
        currency=(currency or "usd").lower(),
        token_hash=token.token_hash,
        token_suffix=token.suffix,
        policy_id=snapshot.policy_id,
        terms_url=snapshot.terms_url,
        privacy_url=snapshot.privacy_url,
        terms_version=snapshot.terms_version,
        terms_content_hash=snapshot.terms_content_hash,
        status=S.CREATED,
        expires_at=expires_at,
    )
    db.add(enrollment)
    db.flush()
    record_event(db, enrollment.id, "created", {
        "source": source,
        "crm_record_id": crm_record_id,
        "crm_module": crm_module,
        "amount_cents": amount_cents,
        "expires_at": expires_at,
        "policy_id": snapshot.policy_id,
        "policy_name": snapshot.name,
    })
    db.commit()
    db.refresh(enrollment)
    logger.info("[ENROLLMENT] Created %s for %s/%s (token ...%s)", enrollment.id, crm_module, crm_record_id, token.suffix)
    return IssuedLink(enrollment=enrollment, token=token, regenerated=False)


def _validate_amount(amount_cents: int) -> None:
    if amount_cents is None or amount_cents <= 0:
        raise InvalidRequest("amount_cents must be a positive integer")


def create_for_crm(
    db: Session,
    crm_module: str,
    crm_record_id: str,
    amount_cents: int,
    currency: str = "usd",
    expires_in_hours: Optional[int] = None,
    snapshot: Optional[PolicySnapshot] = None,
    patient_name: Optional[str] = None,
    patient_email: Optional[str] = None,
    patient_phone: Optional[str] = None,
    patient_id: Optional[UUID] = None,
    source: str = "crm",
) -> IssuedLink:
    """
    Issue a link for a CRM record.

    A live link that has not reached checkout is rotated in place, so a CRM
    record never has two usable links. A payment in flight blocks issuance.
    """
    _validate_amount(amount_cents)
    hours = expires_in_hours if expires_in_hours is not None else settings.DEFAULT_EXPIRES_IN_HOURS
    if hours <= 0:
        raise InvalidRequest("expires_in_hours must be positive")
    expires_at = datetime.utcnow() + timedelta(hours=hours)
    snapshot = snapshot or resolve_policy_snapshot(db)

    for _ in range(2):
        existing = find_live_for_crm(db, crm_module, crm_record_id)
        if existing is not None:
            link = _rotate_live(db, existing, expires_at, snapshot, amount_cents, currency, source)
            if link is not None:
                return link
            # Status moved under us; look again
            continue
        try:
            return _insert(
                db, crm_module, crm_record_id, amount_cents, currency, expires_at, snapshot,
                patient_name, patient_email, patient_phone, patient_id, source,
            )
        except IntegrityError:
            # A concurrent request inserted the live enrollment first
            db.rollback()
            logger.info("[ENROLLMENT] Concurrent create for %s/%s; rotating the winner", crm_module, crm_record_id)

    raise TerminalStateConflict("Enrollment for this record is changing; please retry")


def _rotate_live(
    db: Session,
    existing: Enrollment,
    expires_at: datetime,
    snapshot: PolicySnapshot,
    amount_cents: int,
    currency: str,
    source: str,
) -> Optional[IssuedLink]:
    if EnrollmentStatus(existing.status) == S.PROCESSING:
        raise TerminalStateConflict("A payment for this record is in progress")
    token = rotate_token(
        db, existing, ACTIVE_LINK_STATUSES, expires_at,
        snapshot=snapshot, amount_cents=amount_cents, currency=currency,
        event_data={"source": source, "reason": "reissued"},
    )
    if token is None:
        return None
    return IssuedLink(enrollment=existing, token=token, regenerated=True)


def create_manual(
    db: Session,
    amount_cents: int,
    expires_at: datetime,
    snapshot: PolicySnapshot,
    currency: str = "usd",
    patient_name: Optional[str] = None,
    patient_email: Optional[str] = None,
    patient_phone: Optional[str] = None,
    patient_id: Optional[UUID] = None,
) -> IssuedLink:
    """Admin-issued enrollment with no CRM record behind it."""
    _validate_amount(amount_cents)
    if expires_at <= datetime.utcnow():
        raise InvalidRequest("expires_at must be in the future")
    record_id = f"manual_{int(time.time() * 1000)}"
    return _insert(
        db, MANUAL_MODULE, record_id, amount_cents, currency, expires_at, snapshot,
        patient_name, patient_email, patient_phone, patient_id, "admin",
    )


def regenerate(
    db: Session,
    enrollment: Enrollment,
    expires_at: datetime,
    snapshot: Optional[PolicySnapshot] = None,
    amount_cents: Optional[int] = None,
    currency: Optional[str] = None,
) -> IssuedLink:
    """Admin regeneration of an expired, failed or canceled link."""
    status = EnrollmentStatus(enrollment.status)
    if status not in REGENERABLE_STATUSES:
        if status == S.PAID:
            raise TerminalStateConflict("Cannot regenerate a paid enrollment")
        if status == S.PROCESSING:
            raise TerminalStateConflict("A payment for this enrollment is in progress")
        raise TerminalStateConflict("Only expired, failed or canceled enrollments can be regenerated")
    if expires_at <= datetime.utcnow():
        raise InvalidRequest("expires_at must be in the future")
    if amount_cents is not None:
        _validate_amount(amount_cents)

    try:
        token = rotate_token(
            db, enrollment, REGENERABLE_STATUSES, expires_at,
            snapshot=snapshot, amount_cents=amount_cents, currency=currency,
            event_data={"source": "admin"},
        )
    except IntegrityError:
        db.rollback()
        raise TerminalStateConflict("Another active enrollment exists for this record")
    if token is None:
        raise TerminalStateConflict("Enrollment status changed; reload and try again")
    return IssuedLink(enrollment=enrollment, token=token, regenerated=True)


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------

def expire_if_overdue(db: Session, enrollment: Enrollment, crm=None, now: Optional[datetime] = None) -> bool:
    """Lazy expiry on read. Never touches processing or terminal enrollments."""
    if EnrollmentStatus(enrollment.status) not in ACTIVE_LINK_STATUSES:
        return False
    if not enrollment.is_past_expiry(now):
        return False
    changed = mark_expired(db, enrollment, event_data={"trigger": "read"})
    if changed and crm is not None:
        crm.push(enrollment)
    return changed


def expire_overdue(db: Session, crm=None, now: Optional[datetime] = None) -> List[Enrollment]:
    """Expire every active link whose expiry has passed. Returns the ones this call expired."""
    now = now or datetime.utcnow()
    overdue = db.query(Enrollment).filter(
        Enrollment.status.in_(list(ACTIVE_LINK_STATUSES)),
        Enrollment.expires_at < now,
    ).all()

    expired = []
    for enrollment in overdue:
        if mark_expired(db, enrollment, event_type="auto_expired", event_data={"trigger": "sweep"}):
            expired.append(enrollment)
            if crm is not None:
                crm.push(enrollment)
    logger.info("[ENROLLMENT] Overdue sweep expired %d of %d candidates", len(expired), len(overdue))
    return expired
