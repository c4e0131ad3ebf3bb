"""Shared fixtures: in-memory database, fake collaborators and request signing."""
import os

# Settings are read at import time; configure before anything imports enrollpay
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "Zm9vYmFyYmF6cXV4Zm9vYmFyYmF6cXV4Zm9vYmFyYmE=")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENROLLMENT_SHARED_SECRET", "crm-shared-secret")
os.environ.setdefault("ADMIN_API_TOKEN", "admin-test-token")
os.environ.setdefault("APP_URL", "https://enroll.example.com")

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from enrollpay.api.deps import get_crm_sync, get_gateway, get_mailer, get_storage
from enrollpay.core.config import settings
from enrollpay.db.session import Base, get_db
from enrollpay.main import app
from enrollpay.models.enrollment import Enrollment
from enrollpay.models.enrollment_event import EnrollmentEvent
from enrollpay.models.policy import Policy
from enrollpay.services import enrollment_store
from enrollpay.services.stripe_gateway import HostedSession

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 1x1 transparent PNG
SIGNATURE_PNG_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
SIGNATURE_DATA_URL = "data:image/png;base64," + SIGNATURE_PNG_B64

TERMS_HTML = "<h1>Terms of Service</h1><p>Payment is due in full.</p><ul><li>No refunds after surgery</li></ul>"
PRIVACY_HTML = "<p>We protect your data &amp; never sell it.</p>"


class FakeGateway:
    def __init__(self):
        self.customers = []
        self.sessions = []

    def find_or_create_customer(self, email, name=None, phone=None, metadata=None):
        self.customers.append({"email": email, "name": name, "phone": phone, "metadata": metadata})
        return "cus_test_123"

    def create_checkout_session(self, **params):
        self.sessions.append(params)
        session_id = f"cs_test_{len(self.sessions)}"
        return HostedSession(id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}")


class FakeStorage:
    def __init__(self):
        self.objects = {}

    def put(self, key, data, content_type="application/octet-stream"):
        self.objects[key] = data
        return key

    def get(self, key):
        if key not in self.objects:
            raise FileNotFoundError(key)
        return self.objects[key]

    def signed_url(self, key, expires_in=None):
        return f"https://storage.test/{key}?expires={expires_in}"

    def keys_with_prefix(self, prefix):
        return [k for k in self.objects if k.startswith(prefix)]


class FakeCRM:
    def __init__(self):
        self.pushes = []

    def push(self, enrollment, note_title=None, note_content=None):
        self.pushes.append((enrollment.id, enrollment.status.value, note_title))
        return True

    def statuses(self):
        return [status for _, status, _ in self.pushes]


class FakeMailer:
    def __init__(self):
        self.calls = []

    def __call__(self, enrollment, payment_date, pdf_bytes=None):
        self.calls.append({"enrollment_id": enrollment.id, "payment_date": payment_date, "pdf": pdf_bytes})
        return True


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def crm():
    return FakeCRM()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(db, gateway, storage, crm, mailer):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_crm_sync] = lambda: crm
    app.dependency_overrides[get_mailer] = lambda: mailer
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {settings.ADMIN_API_TOKEN}"}


@pytest.fixture
def crm_headers():
    return {"X-Shared-Secret": settings.ENROLLMENT_SHARED_SECRET}


@pytest.fixture
def default_policy(db):
    policy = Policy(
        name="Standard Enrollment",
        terms_url="https://example.com/terms",
        privacy_url="https://example.com/privacy",
        version="2026-01",
        terms_text=TERMS_HTML,
        privacy_text=PRIVACY_HTML,
        terms_content_hash=enrollment_store.compute_policy_hash(TERMS_HTML, "https://example.com/terms"),
        is_default=True,
        is_active=True,
    )
    db.add(policy)
    db.commit()
    db.refresh(policy)
    return policy


@pytest.fixture
def make_link(db, default_policy):
    """Issue a CRM enrollment directly through the store."""
    counter = {"n": 0}

    def _make(crm_record_id=None, amount_cents=150000, expires_in_hours=48, **kwargs):
        counter["n"] += 1
        kwargs.setdefault("patient_name", "Jane Doe")
        kwargs.setdefault("patient_email", "jane@example.com")
        kwargs.setdefault("patient_phone", "+15555550100")
        return enrollment_store.create_for_crm(
            db,
            crm_module="Deals",
            crm_record_id=crm_record_id or f"rec_{counter['n']}",
            amount_cents=amount_cents,
            expires_in_hours=expires_in_hours,
            **kwargs,
        )

    return _make


@pytest.fixture
def opened_checkout(client, make_link, db):
    """An enrollment that went through resolve + checkout; returns (link, session_id)."""
    link = make_link()
    client.post("/enrollments/resolve", json={"token": link.token.raw_token})
    response = client.post(
        "/enrollments/checkout",
        json={"token": link.token.raw_token, "terms_accepted": True, "signature_data": SIGNATURE_DATA_URL},
    )
    assert response.status_code == 200, response.text
    db.refresh(link.enrollment)
    return link, response.json()["session_id"]


def set_expired(db, enrollment, minutes_ago=5):
    enrollment.expires_at = datetime.utcnow() - timedelta(minutes=minutes_ago)
    db.commit()
    db.refresh(enrollment)


def events_of(db, enrollment_id, event_type=None):
    query = db.query(EnrollmentEvent).filter(EnrollmentEvent.enrollment_id == enrollment_id)
    if event_type:
        query = query.filter(EnrollmentEvent.event_type == event_type)
    return query.order_by(EnrollmentEvent.created_at.asc()).all()


def reload(db, enrollment):
    db.expire_all()
    return db.query(Enrollment).filter(Enrollment.id == enrollment.id).one()


def stripe_signature_header(payload: str, secret: str = None, timestamp: int = None) -> str:
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def post_stripe_event(client, event: dict, secret: str = None):
    payload = json.dumps(event)
    return client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature_header(payload, secret), "Content-Type": "application/json"},
    )


def stripe_event(event_type: str, obj: dict, event_id: str = None) -> dict:
    return {
        "id": event_id or f"evt_{event_type.replace('.', '_')}_{obj.get('id', 'x')}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def checkout_session_object(enrollment, session_id, payment_status="paid", payment_intent="pi_test_1",
                            payment_method_types=None):
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "payment_intent": payment_intent,
        "payment_method_types": payment_method_types or ["card", "us_bank_account"],
        "amount_total": enrollment.amount_cents,
        "metadata": {"enrollment_id": str(enrollment.id)},
    }


def payment_intent_object(enrollment, intent_id="pi_test_1", error_message=None):
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "metadata": {"enrollment_id": str(enrollment.id)},
    }
    if error_message:
        obj["last_payment_error"] = {"message": error_message}
    return obj
