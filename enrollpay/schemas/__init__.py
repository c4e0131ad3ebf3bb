from enrollpay.schemas.enrollment import (
    CRMEnrollmentCreate, AdminEnrollmentCreate, RegenerateRequest, CancelRequest,
    EnrollmentLink, ResolveRequest, CheckoutRequest, CheckoutResponse,
    PatientEnrollmentView, AdminEnrollment, EnrollmentEventOut,
    ConsentDocumentLink, ExpireOverdueResponse,
)
from enrollpay.schemas.policy import Policy, PolicyCreate

__all__ = [
    "CRMEnrollmentCreate", "AdminEnrollmentCreate", "RegenerateRequest", "CancelRequest",
    "EnrollmentLink", "ResolveRequest", "CheckoutRequest", "CheckoutResponse",
    "PatientEnrollmentView", "AdminEnrollment", "EnrollmentEventOut",
    "ConsentDocumentLink", "ExpireOverdueResponse",
    "Policy", "PolicyCreate",
]
