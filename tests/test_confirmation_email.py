import base64
from datetime import datetime

import httpx
import pytest

from enrollpay.core.config import settings
from enrollpay.models.enrollment import PaymentMethodKind
from enrollpay.services import confirmation_email


@pytest.fixture
def brevo(monkeypatch):
    sent = []

    def fake_post(url, headers=None, json=None, timeout=None):
        sent.append({"url": url, "headers": headers, "json": json})
        return httpx.Response(201, json={"messageId": "<test@brevo>"})

    monkeypatch.setattr(settings, "BREVO_API_KEY", "xkeysib-test")
    monkeypatch.setattr(confirmation_email.httpx, "post", fake_post)
    return sent


def test_sends_with_attachment(brevo, make_link, db):
    enrollment = make_link(patient_name="Jane <Doe>", patient_email="Jane@Example.com").enrollment
    enrollment.payment_method_kind = PaymentMethodKind.ACH
    db.commit()

    assert confirmation_email.send_confirmation_email(enrollment, datetime(2026, 4, 2), b"%PDF-1.4 test") is True

    payload = brevo[0]["json"]
    assert brevo[0]["headers"]["api-key"] == "xkeysib-test"
    assert payload["to"] == [{"email": "jane@example.com", "name": "Jane <Doe>"}]
    assert payload["attachment"][0]["name"] == "Enrollment-Agreement.pdf"
    assert base64.b64decode(payload["attachment"][0]["content"]) == b"%PDF-1.4 test"
    assert "Jane &lt;Doe&gt;" in payload["htmlContent"]
    assert "ACH Bank Transfer" in payload["htmlContent"]
    assert "April 02, 2026" in payload["htmlContent"]


def test_no_attachment_without_pdf(brevo, make_link):
    enrollment = make_link().enrollment
    assert confirmation_email.send_confirmation_email(enrollment, datetime.utcnow()) is True
    assert "attachment" not in brevo[0]["json"]


def test_skipped_without_api_key(monkeypatch, make_link):
    monkeypatch.setattr(settings, "BREVO_API_KEY", None)
    assert confirmation_email.send_confirmation_email(make_link().enrollment, datetime.utcnow()) is False


def test_skipped_without_patient_email(brevo, make_link):
    enrollment = make_link(patient_email=None).enrollment
    assert confirmation_email.send_confirmation_email(enrollment, datetime.utcnow()) is False
    assert brevo == []


def test_rejected_send_returns_false(monkeypatch, make_link):
    monkeypatch.setattr(settings, "BREVO_API_KEY", "xkeysib-test")
    monkeypatch.setattr(confirmation_email.httpx, "post", lambda *a, **k: httpx.Response(400, text="bad sender"))
    assert confirmation_email.send_confirmation_email(make_link().enrollment, datetime.utcnow()) is False
