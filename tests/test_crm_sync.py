"""Zoho CRM push: field mapping, token caching and failure handling"""
import json
from datetime import datetime

import httpx
import pytest

from enrollpay.api.deps import get_crm_sync
from enrollpay.core.config import settings
from enrollpay.main import app
from enrollpay.models.enrollment import Enrollment, EnrollmentStatus, PaymentMethodKind
from enrollpay.services.crm_sync import CRMSync, ZohoCRMClient, build_record_fields


@pytest.fixture
def zoho_settings(monkeypatch):
    monkeypatch.setattr(settings, "ZOHO_CLIENT_ID", "zoho-client")
    monkeypatch.setattr(settings, "ZOHO_CLIENT_SECRET", "zoho-secret")
    monkeypatch.setattr(settings, "ZOHO_REFRESH_TOKEN", "zoho-refresh")


class ZohoStub:
    """Records requests made through an httpx.MockTransport."""

    def __init__(self, update_status=200, token_payload=None):
        self.requests = []
        self.update_status = update_status
        self.token_payload = token_payload or {"access_token": "zoho-access", "expires_in": 3600}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/oauth/v2/token"):
            return httpx.Response(200, json=self.token_payload)
        if request.method == "PUT":
            return httpx.Response(self.update_status, json={"data": [{"status": "success"}]})
        return httpx.Response(201, json={"data": [{"status": "success"}]})

    def sync(self) -> CRMSync:
        http = httpx.Client(transport=httpx.MockTransport(self.handler))
        return CRMSync(ZohoCRMClient(http_client=http))

    def paths(self, method=None):
        return [r.url.path for r in self.requests if method is None or r.method == method]


def test_created_fields(make_link):
    link = make_link()
    fields = build_record_fields(link.enrollment)
    assert fields["Enrollment_Status"] == "Created"
    assert fields["Enrollment_Token_Last4"] == link.token.suffix
    assert fields["Enrollment_Link_Expires"].endswith("+00:00")
    assert "Payment_Date" not in fields


def test_paid_fields(make_link, db):
    enrollment = make_link().enrollment
    enrollment.status = EnrollmentStatus.PAID
    enrollment.paid_at = datetime(2026, 3, 1, 12, 30, 15, 123456)
    enrollment.payment_method_kind = PaymentMethodKind.CARD
    enrollment.checkout_session_id = "cs_test_9"
    db.commit()

    fields = build_record_fields(enrollment)
    assert fields == {
        "Enrollment_Status": "Paid",
        "Payment_Method_Stripe": "Card",
        "Stripe_Session_ID": "cs_test_9",
        "Payment_Date": "2026-03-01T12:30:15+00:00",
    }


def test_push_updates_record_and_adds_note(zoho_settings, make_link):
    stub = ZohoStub()
    link = make_link(crm_record_id="5551234")

    assert stub.sync().push(link.enrollment, note_title="Payment received", note_content="Card payment") is True

    put = [r for r in stub.requests if r.method == "PUT"][0]
    assert put.url.path.endswith("/Deals/5551234")
    assert put.headers["Authorization"] == "Zoho-oauthtoken zoho-access"
    assert json.loads(put.content)["data"][0]["Enrollment_Status"] == "Created"

    note = [r for r in stub.requests if r.url.path.endswith("/Notes")][0]
    body = json.loads(note.content)["data"][0]
    assert body["Parent_Id"] == "5551234"
    assert body["se_module"] == "Deals"
    assert body["Note_Title"] == "Payment received"


def test_access_token_is_cached(zoho_settings, make_link):
    stub = ZohoStub()
    sync = stub.sync()
    link = make_link()

    sync.push(link.enrollment)
    sync.push(link.enrollment)

    token_calls = [p for p in stub.paths() if p.endswith("/oauth/v2/token")]
    assert len(token_calls) == 1
    assert len(stub.paths("PUT")) == 2


def test_failed_update_returns_false(zoho_settings, make_link):
    stub = ZohoStub(update_status=500)
    assert stub.sync().push(make_link().enrollment, note_title="Ignored") is False
    assert not any(p.endswith("/Notes") for p in stub.paths())


def test_bad_refresh_token_returns_false(zoho_settings, make_link):
    stub = ZohoStub(token_payload={"error": "invalid_code"})
    assert stub.sync().push(make_link().enrollment) is False
    assert stub.paths("PUT") == []


def test_manual_enrollments_are_not_pushed(zoho_settings, client, admin_headers, default_policy, db):
    client.post("/admin/enrollments", headers=admin_headers, json={
        "amount_cents": 5000,
        "expires_at": "2099-01-01T00:00:00",
    })
    stub = ZohoStub()
    assert stub.sync().push(db.query(Enrollment).one()) is False
    assert stub.requests == []


def test_unconfigured_push_is_skipped(monkeypatch, make_link):
    monkeypatch.setattr(settings, "ZOHO_CLIENT_ID", None)
    stub = ZohoStub()
    assert stub.sync().push(make_link().enrollment) is False
    assert stub.requests == []


def test_non_json_token_response_returns_false(zoho_settings, make_link):
    def handler(request):
        if request.url.path.endswith("/oauth/v2/token"):
            return httpx.Response(200, text="<html>maintenance</html>")
        return httpx.Response(200, json={"data": []})

    http = httpx.Client(transport=httpx.MockTransport(handler))
    assert CRMSync(ZohoCRMClient(http_client=http)).push(make_link().enrollment) is False


def test_non_json_token_response_does_not_fail_enrollment_create(zoho_settings, client, crm_headers, default_policy):
    http = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>down</html>")))
    app.dependency_overrides[get_crm_sync] = lambda: CRMSync(ZohoCRMClient(http_client=http))

    response = client.post("/enrollments", headers=crm_headers, json={
        "crm_module": "Deals",
        "crm_record_id": "5550001",
        "amount_cents": 150000,
    })
    assert response.status_code == 201, response.text
