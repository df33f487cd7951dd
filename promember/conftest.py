# promember/conftest.py
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import jwt
import pytest
from fastapi.testclient import TestClient

from promember.core.config import Settings
from promember.core.container import build_services
from promember.core.database import build_engine, build_session_factory, create_all_tables
from promember.features.billing.provider import BillingProviderError, CheckoutMode
from promember.features.billing.stripe_provider import StripeProvider
from promember.features.claims.identity import IdentityProviderError
from promember.features.membership.models import AuthorizationClaims

WEBHOOK_SECRET = "whsec_test_secret"
CLERK_TEST_SECRET = "test-clerk-secret-for-hs256-session-tokens"
ADMIN_KEY = "test-admin-key"


class FakeClock:
    """Controllable clock; call for an aware datetime, .epoch() for seconds."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeBillingProvider:
    """In-memory payment provider. Webhook signatures are verified for real."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        self._verifier = StripeProvider(None, webhook_secret, client=MagicMock())
        self.checkout_calls: List[Dict[str, Any]] = []
        self.portal_calls: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.fail_checkout = False
        self.fail_cancel = False

    def create_checkout_session(self, *, mode, price_id, success_url, cancel_url, metadata,
                                customer_id=None, client_reference_id=None) -> str:
        if self.fail_checkout:
            raise BillingProviderError("stripe exploded: card_declined")
        self.checkout_calls.append({
            "mode": CheckoutMode(mode),
            "price_id": price_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
            "customer_id": customer_id,
            "client_reference_id": client_reference_id,
        })
        return f"https://checkout.stripe.test/session/{len(self.checkout_calls)}"

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self.portal_calls.append({"customer_id": customer_id, "return_url": return_url})
        return f"https://billing.stripe.test/portal/{customer_id}"

    def cancel_subscription(self, subscription_id: str) -> None:
        if self.fail_cancel:
            raise BillingProviderError(f"cannot cancel {subscription_id}")
        self.cancelled.append(subscription_id)

    def verify_event(self, headers, body):
        return self._verifier.verify_event(headers, body)


class FakeIdentityProvider:
    """In-memory Clerk public_metadata with null-deletes-key merge semantics."""

    def __init__(self):
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.writes: List[str] = []
        self.fail_writes = False
        self.fail_reads = False

    def get_claims(self, user_id: str) -> Dict[str, Any]:
        if self.fail_reads:
            raise IdentityProviderError("clerk unavailable")
        meta = self.metadata.get(user_id, {})
        return {k: meta[k] for k in AuthorizationClaims.WIRE_KEYS if k in meta}

    def set_claims(self, user_id: str, claims: AuthorizationClaims) -> None:
        if self.fail_writes:
            raise IdentityProviderError("clerk unavailable")
        meta = self.metadata.setdefault(user_id, {})
        update = {k: None for k in AuthorizationClaims.WIRE_KEYS}
        update.update(claims.to_dict())
        for key, value in update.items():
            if value is None:
                meta.pop(key, None)
            else:
                meta[key] = value
        self.writes.append(user_id)

    def claims_for(self, user_id: str) -> AuthorizationClaims:
        return AuthorizationClaims.from_mapping(self.metadata.get(user_id))


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{body.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'promember.db'}")
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        ENVIRONMENT="test",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRICE_MONTHLY="price_monthly",
        STRIPE_PRICE_LIFETIME="price_lifetime",
        CLERK_SECRET_KEY=CLERK_TEST_SECRET,
        ADMIN_KEY=ADMIN_KEY,
        ADMIN_AUTH_MODE="hybrid",
        FRONTEND_URL="https://app.example.test",
    )


@pytest.fixture
def fake_billing():
    return FakeBillingProvider()


@pytest.fixture
def fake_identity():
    return FakeIdentityProvider()


@pytest.fixture
def services(test_settings, session_factory, fake_billing, fake_identity):
    return build_services(
        test_settings,
        session_factory,
        billing_provider=fake_billing,
        identity=fake_identity,
    )


@pytest.fixture
def client(services):
    from promember.main import create_app

    return TestClient(create_app(services))


@pytest.fixture
def signed_webhook():
    """Build (headers, body) for a Stripe-style event signed with the test secret."""

    def _build(event_type: str, obj: Dict[str, Any], *, event_id: Optional[str] = None,
               created: Optional[int] = None, secret: str = WEBHOOK_SECRET):
        payload = {
            "id": event_id or f"evt_{hashlib.sha1(json.dumps(obj, sort_keys=True).encode()).hexdigest()[:12]}_{event_type}",
            "object": "event",
            "type": event_type,
            "created": created if created is not None else int(time.time()),
            "data": {"object": obj},
        }
        body = json.dumps(payload).encode("utf-8")
        return {"stripe-signature": sign(body, secret)}, body

    return _build


@pytest.fixture
def make_token():
    """HS256 session token signed with the test Clerk secret."""

    def _make(sub: str = "user_1", *, role: Optional[str] = None, exp_minutes: int = 60,
              secret: str = CLERK_TEST_SECRET) -> str:
        now = int(time.time())
        payload = {"sub": sub, "iat": now, "exp": now + exp_minutes * 60, "public_metadata": {}}
        if role:
            payload["public_metadata"]["role"] = role
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make
