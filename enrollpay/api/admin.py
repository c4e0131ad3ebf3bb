from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID
import logging

from enrollpay.api.deps import get_crm_sync, get_db, get_storage, require_admin
from enrollpay.api.enrollments import link_response
from enrollpay.core.config import settings
from enrollpay.core.errors import NotFound, TerminalStateConflict, UpstreamProcessorError
from enrollpay.core.state_machine import can_transition, is_terminal
from enrollpay.models.enrollment import EnrollmentStatus
from enrollpay.models.enrollment_event import EnrollmentEvent
from enrollpay.models.policy import Policy
from enrollpay.schemas.enrollment import (
    AdminEnrollment,
    AdminEnrollmentCreate,
    CancelRequest,
    ConsentDocumentLink,
    EnrollmentEventOut,
    EnrollmentLink,
    ExpireOverdueResponse,
    RegenerateRequest,
)
from enrollpay.schemas.policy import Policy as PolicySchema, PolicyCreate
from enrollpay.services import enrollment_store
from enrollpay.services.storage import StorageError

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


# ---------------------------------------------------------------------------
# Enrollments
# ---------------------------------------------------------------------------

@router.post("/enrollments", response_model=EnrollmentLink, status_code=status.HTTP_201_CREATED)
def create_manual_enrollment(payload: AdminEnrollmentCreate, db: Session = Depends(get_db)):
    snapshot = enrollment_store.resolve_policy_snapshot(db, policy_id=payload.policy_id)
    link = enrollment_store.create_manual(
        db,
        amount_cents=payload.amount_cents,
        expires_at=payload.expires_at,
        snapshot=snapshot,
        currency=payload.currency,
        patient_name=payload.patient_name,
        patient_email=payload.patient_email,
        patient_phone=payload.patient_phone,
        patient_id=payload.patient_id,
    )
    return link_response(link)


@router.post("/enrollments/expire-overdue", response_model=ExpireOverdueResponse)
def expire_overdue(db: Session = Depends(get_db), crm=Depends(get_crm_sync)):
    expired = enrollment_store.expire_overdue(db, crm=crm)
    return ExpireOverdueResponse(expired=len(expired))


@router.get("/enrollments/{enrollment_id}", response_model=AdminEnrollment)
def get_enrollment(enrollment_id: UUID, db: Session = Depends(get_db)):
    return enrollment_store.get_enrollment(db, enrollment_id)


@router.get("/enrollments/{enrollment_id}/events", response_model=List[EnrollmentEventOut])
def list_enrollment_events(enrollment_id: UUID, db: Session = Depends(get_db)):
    enrollment_store.get_enrollment(db, enrollment_id)
    return db.query(EnrollmentEvent).filter(
        EnrollmentEvent.enrollment_id == enrollment_id
    ).order_by(EnrollmentEvent.created_at.asc()).all()


@router.post("/enrollments/{enrollment_id}/regenerate", response_model=EnrollmentLink)
def regenerate_enrollment(
    enrollment_id: UUID,
    payload: RegenerateRequest,
    db: Session = Depends(get_db),
    crm=Depends(get_crm_sync),
):
    enrollment = enrollment_store.get_enrollment(db, enrollment_id)
    snapshot = None
    if payload.policy_id:
        snapshot = enrollment_store.resolve_policy_snapshot(db, policy_id=payload.policy_id)
    link = enrollment_store.regenerate(
        db,
        enrollment,
        expires_at=payload.expires_at,
        snapshot=snapshot,
        amount_cents=payload.amount_cents,
        currency=payload.currency,
    )
    crm.push(link.enrollment, note_title="Enrollment link regenerated",
             note_content=f"New link expires {link.enrollment.expires_at.isoformat()} UTC.")
    return link_response(link)


@router.post("/enrollments/{enrollment_id}/sent", response_model=AdminEnrollment)
def mark_enrollment_sent(enrollment_id: UUID, db: Session = Depends(get_db)):
    enrollment = enrollment_store.get_enrollment(db, enrollment_id)
    # Already sent or further along is fine; only a dead link is an error
    if (
        not enrollment_store.mark_sent(db, enrollment)
        and is_terminal(enrollment.status)
        and enrollment.status != EnrollmentStatus.PAID
    ):
        raise TerminalStateConflict()
    return enrollment


@router.post("/enrollments/{enrollment_id}/cancel", response_model=AdminEnrollment)
def cancel_enrollment(
    enrollment_id: UUID,
    payload: Optional[CancelRequest] = None,
    db: Session = Depends(get_db),
    crm=Depends(get_crm_sync),
):
    enrollment = enrollment_store.get_enrollment(db, enrollment_id)
    if not can_transition(enrollment.status, EnrollmentStatus.CANCELED):
        raise TerminalStateConflict(f"Cannot cancel an enrollment in status {enrollment.status.value}")
    reason = payload.reason if payload else None
    if not enrollment_store.mark_canceled(db, enrollment, reason=reason):
        raise TerminalStateConflict(f"Cannot cancel an enrollment in status {enrollment.status.value}")
    crm.push(enrollment, note_title="Enrollment canceled", note_content=reason or "Canceled by staff.")
    return enrollment


@router.get("/enrollments/{enrollment_id}/consent-document", response_model=ConsentDocumentLink)
def get_consent_document(enrollment_id: UUID, db: Session = Depends(get_db), storage=Depends(get_storage)):
    enrollment = enrollment_store.get_enrollment(db, enrollment_id)
    if not enrollment.consent_document_ref:
        raise NotFound("No consent document for this enrollment")
    ttl = settings.CONSENT_URL_TTL_SECONDS
    try:
        url = storage.signed_url(enrollment.consent_document_ref, expires_in=ttl)
    except StorageError as e:
        logger.error("[STORAGE] Could not sign consent document URL for %s: %s", enrollment_id, e)
        raise UpstreamProcessorError("Document storage is unavailable")
    return ConsentDocumentLink(url=url, expires_in=ttl)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

@router.get("/policies", response_model=List[PolicySchema])
def list_policies(db: Session = Depends(get_db)):
    return db.query(Policy).order_by(Policy.created_at.desc()).all()


@router.post("/policies", response_model=PolicySchema, status_code=status.HTTP_201_CREATED)
def create_policy(payload: PolicyCreate, db: Session = Depends(get_db)):
    if payload.is_default:
        # One default at a time
        db.query(Policy).filter(Policy.is_default.is_(True)).update(
            {"is_default": False}, synchronize_session=False
        )
    policy = Policy(
        name=payload.name,
        description=payload.description,
        terms_url=payload.terms_url,
        privacy_url=payload.privacy_url,
        version=payload.version,
        terms_text=payload.terms_text,
        privacy_text=payload.privacy_text,
        terms_content_hash=enrollment_store.compute_policy_hash(payload.terms_text, payload.terms_url),
        is_default=payload.is_default,
        is_active=True,
    )
    db.add(policy)
    db.commit()
    db.refresh(policy)
    logger.info("[POLICY] Created policy %s (%s v%s, default=%s)", policy.id, policy.name, policy.version, policy.is_default)
    return policy
