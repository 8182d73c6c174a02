import asyncio
import hashlib
import hmac
import json
import sqlite3
import time

import pytest
from fastapi.testclient import TestClient

from ai import AnalysisResult, normalize_report
from billing import StripeBilling
from errors import ExtractionFailed
from main import create_app
from settings import Settings

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_PASSWORD = "admin-test-pw"

SAMPLE_EXTRACTION = {
    "vehicle": "2021 Honda CR-V EX-L",
    "price": 26500,
    "fees": {"doc_fee": 699, "prep_fee": 1200, "gps": 899, "other_add_ons": 0},
    "vin": "1HKRW2H87ME000000",
    "mileage": 32000,
    "otd_price": 29500,
}

SAMPLE_ANALYSIS = {
    "score": 42,
    "red_flags": [
        {
            "title": "GPS tracker",
            "severity": "high",
            "explanation": "A $899 GPS unit was added without being requested.",
            "estimated_savings": 899,
            "negotiation_line": "Please remove the GPS add-on.",
        },
        {
            "title": "Reconditioning fee",
            "severity": "high",
            "explanation": "Prep costs belong in the advertised price.",
            "estimated_savings": 1200,
            "negotiation_line": "I will not pay a separate prep fee.",
        },
    ],
    "target_otd_range": {"min": 24500, "max": 25200},
    "scripts": {"email": "Hi, I'd like to buy at $25,000 OTD.", "in_person": "Drop the add-ons and we have a deal."},
    "summary": "Two junk add-ons inflate this deal by about $2,100.",
}


class FakeMailer:
    def __init__(self):
        self.sent = []

    async def send_login_code(self, to_email, code, ttl_minutes):
        self.sent.append((to_email, code))
        return True

    def last_code(self, email):
        return [code for to, code in self.sent if to == email][-1]


class FakeStorage:
    def __init__(self):
        self.content = b"%PDF-1.4 fake deal sheet"
        self.fetched = []

    def presign_upload(self, key, content_type):
        return f"https://storage.example/{key}?signature=abc"

    async def fetch(self, key):
        self.fetched.append(key)
        return self.content, "application/pdf"


class FakeGemini:
    def __init__(self):
        self.extraction = dict(SAMPLE_EXTRACTION)
        self.analysis = dict(SAMPLE_ANALYSIS)
        self.extract_calls = 0
        self.analyze_calls = 0
        self.fail_extraction = False
        self.next_analysis = None

    async def extract_deal(self, content, mime_type):
        self.extract_calls += 1
        if self.fail_extraction:
            raise ExtractionFailed()
        return dict(self.extraction)

    async def analyze_deal(self, extracted, zip_code):
        self.analyze_calls += 1
        if self.next_analysis is not None:
            result, self.next_analysis = self.next_analysis, None
            return result
        return AnalysisResult(normalize_report(self.analysis))


class FakeBilling(StripeBilling):
    """Real webhook verification, canned checkout sessions."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sessions = []
        self.ran_on_event_loop = []

    def create_checkout(self, deal_id, user_id):
        try:
            asyncio.get_running_loop()
            self.ran_on_event_loop.append(True)
        except RuntimeError:
            self.ran_on_event_loop.append(False)
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({"id": session_id, "metadata": {"dealId": deal_id, "userId": user_id}})
        return session_id, f"https://checkout.stripe.test/pay/{session_id}?success_url={self.success_url(deal_id)}"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        frontend_origin="https://app.example",
        storage_access_key="test-key",
        storage_secret_key="test-secret",
        stripe_secret_key="sk_test_123",
        stripe_price_id="price_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        admin_password=ADMIN_PASSWORD,
        log_level="WARNING",
    )


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.state.mailer = FakeMailer()
    app.state.storage = FakeStorage()
    app.state.gemini = FakeGemini()
    app.state.billing = FakeBilling(
        secret_key=settings.stripe_secret_key,
        price_id=settings.stripe_price_id,
        webhook_secret=settings.stripe_webhook_secret,
        frontend_url=settings.frontend_url,
    )
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def login(client, email="buyer@example.com"):
    """Run the one-time-code flow and return bearer headers."""
    r = client.post("/auth/otp/send", json={"email": email})
    assert r.status_code == 200, r.text
    code = client.app.state.mailer.last_code(email)
    r = client.post("/auth/otp/verify", json={"email": email, "code": code})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


def admin_headers(client):
    r = client.post("/auth/admin/login", json={"password": ADMIN_PASSWORD})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


def upload_and_parse(client, headers, zip_code="90210"):
    r = client.post("/files/presign", json={}, headers=headers)
    assert r.status_code == 200, r.text
    file_key = r.json()["fileUrl"]
    r = client.post("/files/confirm", json={"fileUrl": file_key}, headers=headers)
    assert r.status_code == 200, r.text
    r = client.post("/deals/parse", json={"fileId": file_key, "zip": zip_code}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_completed_event(deal_id: str, amount_total: int = 1999, event_id: str = "evt_test_1") -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_paid",
                    "object": "checkout.session",
                    "amount_total": amount_total,
                    "metadata": {"dealId": deal_id, "userId": "someone"},
                }
            },
        }
    )


def pay(client, deal_id: str, **kwargs):
    payload = checkout_completed_event(deal_id, **kwargs)
    r = client.post("/stripe/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})
    assert r.status_code == 200, r.text
    return r


def count_rows(settings, table: str, where: str = "", params: tuple = ()) -> int:
    """Read the test database directly, outside the app's event loop."""
    path = settings.database_url.split(":///", 1)[1]
    conn = sqlite3.connect(path)
    try:
        sql = f"SELECT COUNT(*) FROM {table}" + (f" WHERE {where}" if where else "")
        return conn.execute(sql, params).fetchone()[0]
    finally:
        conn.close()
