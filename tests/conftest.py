import base64
import hashlib
import hmac
import os
import time
import zlib
from decimal import Decimal

# Point the app at a throwaway database before anything imports it
os.environ["DATABASE_URL"] = "sqlite:///./test_webhooks.db"
os.environ["JWT_SECRET"] = "test-jwt-secret"

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from fastapi.testclient import TestClient

import festival_payments.auth
from festival_payments.database import Base, SessionLocal, engine
from festival_payments.events import NormalizedEvent, ProviderKind
from festival_payments.main import app as fastapi_app
from festival_payments.models import Festival, PaymentIntegration

SECRET = "s3cr3t"
SQUARE_URL = "https://payments.example.com/webhooks/square"
PAYPAL_WEBHOOK_ID = "WH-TEST-001"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[festival_payments.auth.verify_token] = lambda: {"sub": "test"}
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def festival(db):
    f = Festival(name="Summer Fest", user_id=7, current_budget=Decimal("0"))
    db.add(f)
    db.commit()
    return f


@pytest.fixture
def make_integration(db, festival):
    def _make(provider=ProviderKind.STRIPE, **overrides):
        fields = {
            "provider": provider.value,
            "name": f"{provider.value} integration",
            "account_id": "acct_001",
            "webhook_secret": SECRET,
            "user_id": festival.user_id,
            "festival_id": festival.id,
        }
        fields.update(overrides)
        integration = PaymentIntegration(**fields)
        db.add(integration)
        db.commit()
        return integration

    return _make


@pytest.fixture
def make_event():
    """Canonical event factory for reconciler/effect tests."""

    def _make(kind, external_id="txn_001", amount="5000", currency="JPY", event_id=None, **extra):
        return NormalizedEvent(
            provider=ProviderKind.BANK_TRANSFER,
            event_id=event_id or f"evt_{kind.value}_{external_id}",
            native_type=f"test.{kind.value}",
            kind=kind,
            external_id=external_id,
            amount=Decimal(amount) if amount is not None else None,
            currency=currency,
            payload_digest="0" * 64,
            **extra,
        )

    return _make


@pytest.fixture
def stripe_headers():
    def _sign(body: bytes, secret: str = SECRET, timestamp: int = None) -> dict:
        t = int(time.time()) if timestamp is None else timestamp
        signed = f"{t}.{body.decode('utf-8')}".encode("utf-8")
        v1 = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return {"Stripe-Signature": f"t={t},v1={v1}", "Content-Type": "application/json"}

    return _sign


@pytest.fixture
def square_headers():
    def _sign(body: bytes, secret: str = SECRET, url: str = SQUARE_URL, base64_header: bool = False) -> dict:
        digest = hmac.new(secret.encode("utf-8"), url.encode("utf-8") + body, hashlib.sha256).digest()
        if base64_header:
            return {"X-Square-HmacSha256-Signature": base64.b64encode(digest).decode("ascii")}
        return {"X-Square-Signature": digest.hex()}

    return _sign


@pytest.fixture
def bank_headers():
    def _sign(body: bytes, secret: str = SECRET) -> dict:
        return {"X-Signature": "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()}

    return _sign


@pytest.fixture(scope="session")
def paypal_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def paypal_public_pem(paypal_key):
    return paypal_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")


@pytest.fixture
def paypal_headers(paypal_key):
    def _sign(body: bytes, webhook_id: str = PAYPAL_WEBHOOK_ID, key=None) -> dict:
        transmission_id = "b2384410-f8d2-11e7-8f3a-5b5b0ab9b6f6"
        transmission_time = "2026-10-19T10:00:00Z"
        message = f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(body) & 0xFFFFFFFF}"
        signature = (key or paypal_key).sign(message.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return {
            "PAYPAL-TRANSMISSION-ID": transmission_id,
            "PAYPAL-TRANSMISSION-TIME": transmission_time,
            "PAYPAL-TRANSMISSION-SIG": base64.b64encode(signature).decode("ascii"),
            "PAYPAL-AUTH-ALGO": "SHA256withRSA",
            "PAYPAL-CERT-URL": "https://api.paypal.com/v1/notifications/certs/CERT-360caa42",
        }

    return _sign


def stripe_event(event_type="payment_intent.succeeded", event_id="evt_001", integration_id=None, **obj):
    data_object = {"id": "txn_001", "object": "payment_intent", "amount": 5000, "currency": "jpy"}
    data_object.update(obj)
    if integration_id is not None:
        data_object["metadata"] = {"integration_id": str(integration_id), "order_id": "ORDER-1"}
    return {"id": event_id, "type": event_type, "data": {"object": data_object}}


@pytest.fixture
def stripe_payload():
    return stripe_event
