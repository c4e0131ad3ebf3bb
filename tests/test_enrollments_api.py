"""CRM ingress, link resolution and lazy expiry"""
import json
import time

from enrollpay.core.config import settings
from enrollpay.core.security import compute_hmac_signature
from enrollpay.core.tokens import issue_token
from enrollpay.models.enrollment import Enrollment, EnrollmentStatus
from conftest import events_of, reload, set_expired

CRM_BODY = {
    "crm_record_id": "5725767000001234567",
    "crm_module": "Deals",
    "patient_name": "Jane Doe",
    "patient_email": "jane@example.com",
    "patient_phone": "+15555550100",
    "amount_cents": 150000,
}


def _token_from(response):
    return response.json()["enrollment_url"].rsplit("/", 1)[1]


# ---------------------------------------------------------------------------
# CRM ingress
# ---------------------------------------------------------------------------

def test_create_requires_auth(client, default_policy):
    response = client.post("/enrollments", json=CRM_BODY)
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_create_rejects_wrong_shared_secret(client, default_policy):
    response = client.post("/enrollments", json=CRM_BODY, headers={"X-Shared-Secret": "nope"})
    assert response.status_code == 401


def test_create_with_shared_secret(client, default_policy, crm_headers, crm, db):
    response = client.post("/enrollments", json=CRM_BODY, headers=crm_headers)
    assert response.status_code == 201, response.text

    body = response.json()
    token = _token_from(response)
    assert body["enrollment_url"] == f"{settings.APP_URL}/enroll/{token}"
    assert body["token_last4"] == token[-4:]
    assert body["regenerated"] is False

    enrollment = db.query(Enrollment).one()
    assert enrollment.status == EnrollmentStatus.CREATED
    assert enrollment.policy_id == default_policy.id
    assert enrollment.terms_content_hash == default_policy.terms_content_hash
    assert enrollment.currency == "usd"
    assert len(events_of(db, enrollment.id, "created")) == 1
    assert crm.statuses() == ["created"]


def test_create_with_hmac_signature(client, default_policy):
    raw = json.dumps(CRM_BODY).encode("utf-8")
    ts = str(int(time.time() * 1000))
    headers = {
        "X-HMAC-Signature": compute_hmac_signature(raw, ts, settings.ENROLLMENT_SHARED_SECRET),
        "X-HMAC-Timestamp": ts,
        "Content-Type": "application/json",
    }
    response = client.post("/enrollments", content=raw, headers=headers)
    assert response.status_code == 201, response.text


def test_create_rejects_stale_hmac(client, default_policy):
    raw = json.dumps(CRM_BODY).encode("utf-8")
    ts = str(int(time.time() * 1000) - 10 * 60 * 1000)
    headers = {
        "X-HMAC-Signature": compute_hmac_signature(raw, ts, settings.ENROLLMENT_SHARED_SECRET),
        "X-HMAC-Timestamp": ts,
        "Content-Type": "application/json",
    }
    response = client.post("/enrollments", content=raw, headers=headers)
    assert response.status_code == 401


def test_create_without_any_policy(client, crm_headers):
    response = client.post("/enrollments", json=CRM_BODY, headers=crm_headers)
    assert response.status_code == 400
    assert response.json()["error"].startswith("No default policy found")


def test_create_with_explicit_terms(client, crm_headers, db):
    body = dict(
        CRM_BODY,
        terms_url="https://example.com/custom-terms",
        terms_version="v9",
        terms_sha256="A" * 64,
    )
    response = client.post("/enrollments", json=body, headers=crm_headers)
    assert response.status_code == 201, response.text
    enrollment = db.query(Enrollment).one()
    assert enrollment.policy_id is None
    assert enrollment.terms_version == "v9"
    assert enrollment.terms_content_hash == "a" * 64


def test_create_with_unknown_policy(client, crm_headers, default_policy):
    body = dict(CRM_BODY, policy_id="00000000-0000-0000-0000-000000000000")
    response = client.post("/enrollments", json=body, headers=crm_headers)
    assert response.status_code == 400
    assert response.json() == {"error": "Specified policy not found or inactive"}


def test_create_rejects_non_positive_amount(client, crm_headers, default_policy):
    response = client.post("/enrollments", json=dict(CRM_BODY, amount_cents=0), headers=crm_headers)
    assert response.status_code == 422


def test_reissue_rotates_live_link_in_place(client, crm_headers, default_policy, db):
    first = client.post("/enrollments", json=CRM_BODY, headers=crm_headers)
    old_token = _token_from(first)
    client.post("/enrollments/resolve", json={"token": old_token})

    second = client.post("/enrollments", json=dict(CRM_BODY, amount_cents=175000), headers=crm_headers)
    assert second.status_code == 201
    assert second.json()["regenerated"] is True
    assert second.json()["enrollment_id"] == first.json()["enrollment_id"]

    assert db.query(Enrollment).count() == 1
    enrollment = db.query(Enrollment).one()
    assert enrollment.status == EnrollmentStatus.CREATED
    assert enrollment.amount_cents == 175000
    assert enrollment.opened_at is None

    assert client.post("/enrollments/resolve", json={"token": old_token}).status_code == 404
    assert client.post("/enrollments/resolve", json={"token": _token_from(second)}).status_code == 200


def test_reissue_blocked_while_payment_processing(client, crm_headers, default_policy, db):
    client.post("/enrollments", json=CRM_BODY, headers=crm_headers)
    enrollment = db.query(Enrollment).one()
    enrollment.status = EnrollmentStatus.PROCESSING
    db.commit()

    response = client.post("/enrollments", json=CRM_BODY, headers=crm_headers)
    assert response.status_code == 409
    assert db.query(Enrollment).count() == 1


def test_new_link_after_terminal_enrollment(client, crm_headers, default_policy, db):
    client.post("/enrollments", json=CRM_BODY, headers=crm_headers)
    enrollment = db.query(Enrollment).one()
    enrollment.status = EnrollmentStatus.PAID
    db.commit()

    response = client.post("/enrollments", json=CRM_BODY, headers=crm_headers)
    assert response.status_code == 201
    assert response.json()["regenerated"] is False
    assert db.query(Enrollment).count() == 2


# ---------------------------------------------------------------------------
# Resolve
# ---------------------------------------------------------------------------

def test_resolve_projection(client, make_link):
    link = make_link()
    response = client.post("/enrollments/resolve", json={"token": link.token.raw_token})
    assert response.status_code == 200
    body = response.json()

    assert body["patient_first_name"] == "Jane"
    assert body["amount_cents"] == 150000
    assert body["status"] == "opened"
    assert body["terms_text"].startswith("<h1>Terms of Service</h1>")
    assert body["terms_sha256"] == link.enrollment.terms_content_hash
    for hidden in ("token_hash", "token_suffix", "crm_record_id", "crm_module", "checkout_session_id"):
        assert hidden not in body


def test_repeated_opens_record_one_event(client, make_link, db):
    link = make_link()
    opened = []
    for _ in range(5):
        response = client.post("/enrollments/resolve", json={"token": link.token.raw_token})
        opened.append(response.json()["opened_at"])

    assert len(set(opened)) == 1
    assert len(events_of(db, link.enrollment.id, "opened")) == 1


def test_resolve_unknown_and_malformed_tokens(client, make_link):
    make_link()
    unknown = client.post("/enrollments/resolve", json={"token": issue_token().raw_token})
    malformed = client.post("/enrollments/resolve", json={"token": "abc"})
    assert unknown.status_code == malformed.status_code == 404
    assert unknown.json() == malformed.json() == {"error": "Invalid or expired enrollment link"}


def test_resolve_lazily_expires_overdue_link(client, make_link, db, crm):
    link = make_link()
    set_expired(db, link.enrollment)

    response = client.post("/enrollments/resolve", json={"token": link.token.raw_token})
    assert response.status_code == 200
    assert response.json()["status"] == "expired"
    assert response.json()["opened_at"] is None

    enrollment = reload(db, link.enrollment)
    assert enrollment.status == EnrollmentStatus.EXPIRED
    assert enrollment.expired_at is not None
    assert len(events_of(db, enrollment.id, "expired")) == 1
    assert crm.statuses()[-1] == "expired"


def test_processing_is_never_lazily_expired(client, make_link, db):
    link = make_link()
    link.enrollment.status = EnrollmentStatus.PROCESSING
    db.commit()
    set_expired(db, link.enrollment)

    response = client.post("/enrollments/resolve", json={"token": link.token.raw_token})
    assert response.json()["status"] == "processing"


def test_resolve_is_rate_limited(client, make_link, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_MAX_REQUESTS", 3)
    link = make_link()
    codes = [
        client.post("/enrollments/resolve", json={"token": link.token.raw_token}).status_code
        for _ in range(4)
    ]
    assert codes == [200, 200, 200, 429]


def test_rate_limit_ignores_client_supplied_forwarded_hops(client, make_link, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_MAX_REQUESTS", 3)
    link = make_link()
    codes = [
        client.post(
            "/enrollments/resolve",
            json={"token": link.token.raw_token},
            headers={"X-Forwarded-For": f"10.9.9.{i}, 203.0.113.50"},
        ).status_code
        for i in range(4)
    ]
    assert codes == [200, 200, 200, 429]
