from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from enrollpay.api.deps import get_crm_sync, get_db, get_gateway, get_storage, verify_crm_request
from enrollpay.core.rate_limit import rate_limit
from enrollpay.models.enrollment import Enrollment
from enrollpay.schemas.enrollment import (
    CheckoutRequest,
    CheckoutResponse,
    CRMEnrollmentCreate,
    EnrollmentLink,
    PatientEnrollmentView,
    ResolveRequest,
)
from enrollpay.services import checkout as checkout_service
from enrollpay.services import enrollment_store
from enrollpay.services.enrollment_store import IssuedLink
from enrollpay.utils.client_ip import get_client_ip, get_user_agent

router = APIRouter()


def link_response(link: IssuedLink) -> EnrollmentLink:
    return EnrollmentLink(
        enrollment_id=link.enrollment.id,
        enrollment_url=link.url,
        expires_at=link.enrollment.expires_at,
        token_last4=link.token.suffix,
        regenerated=link.regenerated,
    )


def patient_view(db: Session, enrollment: Enrollment) -> PatientEnrollmentView:
    policy = enrollment_store.get_policy_for_enrollment(db, enrollment)
    first_name = enrollment.patient_name.split(" ")[0] if enrollment.patient_name else None
    return PatientEnrollmentView(
        id=enrollment.id,
        patient_first_name=first_name,
        patient_name=enrollment.patient_name,
        patient_email=enrollment.patient_email,
        patient_phone=enrollment.patient_phone,
        amount_cents=enrollment.amount_cents,
        currency=enrollment.currency,
        status=enrollment.status,
        expires_at=enrollment.expires_at,
        terms_version=enrollment.terms_version,
        terms_url=enrollment.terms_url,
        privacy_url=enrollment.privacy_url,
        terms_text=policy.terms_text if policy else None,
        privacy_text=policy.privacy_text if policy else None,
        terms_sha256=enrollment.terms_content_hash,
        opened_at=enrollment.opened_at,
        terms_accepted_at=enrollment.terms_accepted_at,
    )


@router.post(
    "",
    response_model=EnrollmentLink,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_crm_request)],
)
def create_enrollment(
    payload: CRMEnrollmentCreate,
    db: Session = Depends(get_db),
    crm=Depends(get_crm_sync),
):
    """Issue (or re-issue) the payment link for a CRM record."""
    snapshot = enrollment_store.resolve_policy_snapshot(
        db,
        policy_id=payload.policy_id,
        terms_url=payload.terms_url,
        privacy_url=payload.privacy_url,
        terms_version=payload.terms_version,
        terms_sha256=payload.terms_sha256,
    )
    link = enrollment_store.create_for_crm(
        db,
        crm_module=payload.crm_module,
        crm_record_id=payload.crm_record_id,
        amount_cents=payload.amount_cents,
        currency=payload.currency,
        expires_in_hours=payload.expires_in_hours,
        snapshot=snapshot,
        patient_name=payload.patient_name,
        patient_email=payload.patient_email,
        patient_phone=payload.patient_phone,
        patient_id=payload.patient_id,
    )
    crm.push(link.enrollment)
    return link_response(link)


@router.post("/resolve", response_model=PatientEnrollmentView)
@rate_limit()
def resolve_enrollment(
    payload: ResolveRequest,
    request: Request,
    db: Session = Depends(get_db),
    crm=Depends(get_crm_sync),
):
    enrollment = enrollment_store.resolve(db, payload.token)
    enrollment_store.expire_if_overdue(db, enrollment, crm=crm)
    enrollment_store.mark_opened(db, enrollment)
    return patient_view(db, enrollment)


@router.post("/checkout", response_model=CheckoutResponse)
@rate_limit()
def create_checkout(
    payload: CheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    storage=Depends(get_storage),
    crm=Depends(get_crm_sync),
):
    result = checkout_service.create_checkout_session(
        db,
        payload.token,
        payload.terms_accepted,
        client_ip=get_client_ip(request),
        user_agent=get_user_agent(request, payload.consent_user_agent),
        signature_data=payload.signature_data,
        gateway=gateway,
        storage=storage,
        crm=crm,
    )
    return CheckoutResponse(checkout_url=result.checkout_url, session_id=result.session_id)
