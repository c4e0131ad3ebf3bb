from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, Index, Enum as SQLEnum, text
from sqlalchemy.dialects.postgresql import UUID
import uuid
from datetime import datetime
import enum
from enrollpay.db.session import Base


class EnrollmentStatus(str, enum.Enum):
    CREATED = "created"
    SENT = "sent"
    OPENED = "opened"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELED = "canceled"


class PaymentMethodKind(str, enum.Enum):
    CARD = "card"
    ACH = "ach"  # us_bank_account debit, settles asynchronously


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


_LIVE_STATUS_SQL = "status IN ('created', 'sent', 'opened', 'processing')"


class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # External CRM reference ("manual" module for admin-created enrollments)
    crm_module = Column(String, nullable=False)
    crm_record_id = Column(String, nullable=False, index=True)

    # Patient snapshot
    patient_name = Column(String, nullable=True)
    patient_email = Column(String, nullable=True, index=True)
    patient_phone = Column(String, nullable=True)
    patient_id = Column(UUID(as_uuid=True), nullable=True, index=True)

    amount_cents = Column(Integer, nullable=False)  # Minor units
    currency = Column(String(3), default="usd", nullable=False)

    # Only the digest is stored; the raw token is never persisted
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    token_suffix = Column(String(4), nullable=False)

    # Policy snapshot at issuance
    policy_id = Column(UUID(as_uuid=True), ForeignKey("policies.id"), nullable=True, index=True)
    terms_url = Column(Text, nullable=False)
    privacy_url = Column(Text, nullable=True)
    terms_version = Column(String, nullable=False)
    terms_content_hash = Column(String(64), nullable=False)

    status = Column(
        SQLEnum(EnrollmentStatus, name="enrollment_status", values_callable=_enum_values),
        default=EnrollmentStatus.CREATED,
        nullable=False,
        index=True,
    )

    # Lifecycle timestamps
    expires_at = Column(DateTime, nullable=False, index=True)
    opened_at = Column(DateTime, nullable=True)
    terms_accepted_at = Column(DateTime, nullable=True)
    processing_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    # Consent evidence (blobs are stored by reference in object storage)
    consent_ip = Column(String(45), nullable=True)
    consent_user_agent = Column(Text, nullable=True)
    signature_blob_ref = Column(String, nullable=True)
    consent_document_ref = Column(String, nullable=True)

    # Stripe correlation ids
    checkout_session_id = Column(String, nullable=True, unique=True)
    payment_intent_id = Column(String, nullable=True, index=True)
    processor_customer_id = Column(String, nullable=True)
    payment_method_kind = Column(
        SQLEnum(PaymentMethodKind, name="payment_method_kind", values_callable=_enum_values),
        nullable=True,
    )

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        # At most one live enrollment per CRM record (PostgreSQL partial index; final arbiter for creation races)
        Index(
            "uq_enrollments_live_crm_record",
            "crm_module",
            "crm_record_id",
            unique=True,
            postgresql_where=text(_LIVE_STATUS_SQL),
            sqlite_where=text(_LIVE_STATUS_SQL),
        ),
    )

    @property
    def amount_display(self) -> str:
        return f"{(self.currency or 'usd').upper()} {self.amount_cents / 100:,.2f}"

    def is_past_expiry(self, now: datetime = None) -> bool:
        return self.expires_at < (now or datetime.utcnow())
