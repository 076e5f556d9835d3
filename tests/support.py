"""
Shared helpers for the test suite: provider signing, RSA material for
provider B, SQLite-backed settings and a recording dispatcher.
"""
import datetime
import hashlib
import hmac
import json
import os
import tempfile
import time
from typing import Any, Dict, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from jwt.api_jws import PyJWS

from common.retry import RetryConfig
from common.settings import Settings
from ingestion_service.db import make_engine, make_session_factory
from ingestion_service.dispatcher import SideEffectDispatcher
from ingestion_service.models import Base

PROVIDER_A_SECRET = "whsec_test_secret"


def generate_rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def public_key_pem(private_key) -> str:
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


def self_signed_cert_pem(private_key) -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "providerb-webhooks.test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


# One key for the whole run; RSA generation is slow
PROVIDER_B_KEY = generate_rsa_key()
PROVIDER_B_PUBLIC_PEM = public_key_pem(PROVIDER_B_KEY)


def sign_provider_a(body: bytes, secret: str = PROVIDER_A_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def sign_provider_b(body: bytes, private_key=PROVIDER_B_KEY) -> str:
    return PyJWS().encode(body, private_key, algorithm="RS256", headers={"b64": False}, is_payload_detached=True)


def provider_a_payment(event_id: str, event_type: str, payment_id: str,
                       amount: int = 1000, currency: str = "usd") -> bytes:
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": {"id": payment_id, "amount": amount, "currency": currency}},
    }).encode("utf-8")


def provider_a_subscription(event_id: str, event_type: str, subscription_id: str, status: str,
                            period_end: int, customer: str = "cus_1", plan: str = "pro",
                            cancel_at: Optional[int] = None) -> bytes:
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": {
            "id": subscription_id,
            "customer": customer,
            "plan": plan,
            "status": status,
            "current_period_end": period_end,
            "cancel_at": cancel_at,
        }},
    }).encode("utf-8")


def provider_b_payment(event_id: str, event_type: str, order_id: str,
                       value: str = "10.00", currency: str = "USD") -> bytes:
    return json.dumps({
        "event_id": event_id,
        "event_type": event_type,
        "create_time": "2024-01-01T00:00:00Z",
        "resource": {"id": order_id, "amount": {"value": value, "currency_code": currency}},
    }).encode("utf-8")


def provider_b_subscription(event_id: str, event_type: str, subscription_id: str, status: str,
                            next_billing_time: str, payer_id: str = "cus_1", plan_id: str = "pro") -> bytes:
    return json.dumps({
        "event_id": event_id,
        "event_type": event_type,
        "create_time": "2024-01-01T00:00:00Z",
        "resource": {
            "id": subscription_id,
            "status": status,
            "plan_id": plan_id,
            "subscriber": {"payer_id": payer_id},
            "billing_info": {"next_billing_time": next_billing_time},
        },
    }).encode("utf-8")


def headers_a(body: bytes, **kwargs) -> Dict[str, str]:
    return {"x-providera-signature": sign_provider_a(body, **kwargs)}


def headers_b(body: bytes, **kwargs) -> Dict[str, str]:
    return {"x-providerb-signature": sign_provider_b(body, **kwargs)}


def make_test_settings(database_url: str, **overrides: Any) -> Settings:
    values = dict(
        database_url=database_url,
        storage_timeout_seconds=5.0,
        cas_max_retries=3,
        provider_a_webhook_secret=PROVIDER_A_SECRET,
        provider_a_timestamp_tolerance=300,
        provider_b_public_key=PROVIDER_B_PUBLIC_PEM,
        dispatch_max_attempts=3,
        dispatch_base_delay=0.01,
        dispatch_max_delay=0.05,
        dispatch_workers=1,
        dispatch_queue_size=100,
    )
    values.update(overrides)
    return Settings(**values)


class SqliteDatabase:
    """A throwaway SQLite file database with the ingestion schema"""

    def __init__(self, **overrides: Any):
        fd, self.path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.settings = make_test_settings(f"sqlite:///{self.path}", **overrides)
        self.engine = make_engine(self.settings)
        Base.metadata.create_all(bind=self.engine)
        self.session_factory = make_session_factory(self.engine)

    def close(self):
        self.engine.dispose()
        os.unlink(self.path)


class RecordingDispatcher(SideEffectDispatcher):
    """Dispatcher that only records what it was handed"""

    def __init__(self):
        super().__init__(handlers={}, retry_config=RetryConfig(max_attempts=1))
        self.dispatched: List[Any] = []

    def dispatch(self, effect) -> bool:
        self.dispatched.append(effect)
        return True
