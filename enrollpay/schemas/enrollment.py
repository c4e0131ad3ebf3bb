from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import uuid
from enrollpay.models.enrollment import EnrollmentStatus, PaymentMethodKind


def _naive_utc(v):
    """Stored timestamps are naive UTC; accept aware input and convert."""
    if isinstance(v, datetime) and v.tzinfo is not None:
        return v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


def _normalize_currency(v):
    if v is None:
        return v
    v = str(v).strip().lower()
    if len(v) != 3 or not v.isalpha():
        raise ValueError("currency must be a 3-letter ISO code")
    return v


class PatientFields(BaseModel):
    patient_name: Optional[str] = None
    patient_email: Optional[str] = None  # Plain str; CRM data is not always a valid address
    patient_phone: Optional[str] = None
    patient_id: Optional[uuid.UUID] = None


class CRMEnrollmentCreate(PatientFields):
    crm_record_id: str = Field(..., min_length=1)
    crm_module: str = Field(..., min_length=1)
    amount_cents: int = Field(..., gt=0)
    currency: str = "usd"
    terms_url: Optional[str] = None
    privacy_url: Optional[str] = None
    terms_version: Optional[str] = None
    terms_sha256: Optional[str] = None
    policy_id: Optional[uuid.UUID] = None
    expires_in_hours: Optional[int] = Field(None, gt=0)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v):
        return _normalize_currency(v) or "usd"


class AdminEnrollmentCreate(PatientFields):
    amount_cents: int = Field(..., gt=0)
    currency: str = "usd"
    expires_at: datetime
    policy_id: Optional[uuid.UUID] = None

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v):
        return _normalize_currency(v) or "usd"

    @field_validator("expires_at", mode="after")
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)


class RegenerateRequest(BaseModel):
    expires_at: datetime
    amount_cents: Optional[int] = Field(None, gt=0)
    currency: Optional[str] = None
    policy_id: Optional[uuid.UUID] = None

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v):
        return _normalize_currency(v)

    @field_validator("expires_at", mode="after")
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class EnrollmentLink(BaseModel):
    """Returned once, at issuance. The raw token only ever appears here."""
    enrollment_id: uuid.UUID
    enrollment_url: str
    expires_at: datetime
    token_last4: str
    regenerated: bool = False


class ResolveRequest(BaseModel):
    token: str


class CheckoutRequest(BaseModel):
    token: str
    terms_accepted: bool = False
    consent_user_agent: Optional[str] = None
    signature_data: Optional[str] = None


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class PatientEnrollmentView(BaseModel):
    """What the patient-facing page may see. No token hash, no CRM ids."""
    id: uuid.UUID
    patient_first_name: Optional[str] = None
    patient_name: Optional[str] = None
    patient_email: Optional[str] = None
    patient_phone: Optional[str] = None
    amount_cents: int
    currency: str
    status: EnrollmentStatus
    expires_at: datetime
    terms_version: str
    terms_url: str
    privacy_url: Optional[str] = None
    terms_text: Optional[str] = None
    privacy_text: Optional[str] = None
    terms_sha256: str
    opened_at: Optional[datetime] = None
    terms_accepted_at: Optional[datetime] = None


class AdminEnrollment(BaseModel):
    id: uuid.UUID
    crm_module: str
    crm_record_id: str
    patient_name: Optional[str] = None
    patient_email: Optional[str] = None
    patient_phone: Optional[str] = None
    patient_id: Optional[uuid.UUID] = None
    amount_cents: int
    currency: str
    token_suffix: str
    policy_id: Optional[uuid.UUID] = None
    terms_url: str
    privacy_url: Optional[str] = None
    terms_version: str
    terms_content_hash: str
    status: EnrollmentStatus
    expires_at: datetime
    opened_at: Optional[datetime] = None
    terms_accepted_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    consent_ip: Optional[str] = None
    consent_user_agent: Optional[str] = None
    consent_document_ref: Optional[str] = None
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    processor_customer_id: Optional[str] = None
    payment_method_kind: Optional[PaymentMethodKind] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class EnrollmentEventOut(BaseModel):
    id: uuid.UUID
    enrollment_id: uuid.UUID
    event_type: str
    event_data: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ConsentDocumentLink(BaseModel):
    url: str
    expires_in: int


class ExpireOverdueResponse(BaseModel):
    expired: int
