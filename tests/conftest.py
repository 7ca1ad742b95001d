"""
Shared test fixtures for the paysync test suite.
"""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import structlog
from fastapi.testclient import TestClient

STRIPE_WEBHOOK_SECRET = "whsec_test"
PAYTABS_SERVER_KEY = "paytabs-server-key"
PAYMOB_HMAC_SECRET = "paymob-hmac-secret"
PADDLE_WEBHOOK_SECRET = "pdl_ntfset_test"


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for tests so Settings has every gateway configured."""
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET)
    monkeypatch.setenv("PAYTABS__PROFILE_ID", "12345")
    monkeypatch.setenv("PAYTABS__SERVER_KEY", PAYTABS_SERVER_KEY)
    monkeypatch.setenv("PAYMOB__HMAC_SECRET", PAYMOB_HMAC_SECRET)
    monkeypatch.setenv("PADDLE__WEBHOOK_SECRET", PADDLE_WEBHOOK_SECRET)
    monkeypatch.setenv("PADDLE__API_KEY", "")
    # The background sweeper is exercised directly in unit tests
    monkeypatch.setenv("SWEEPER__ENABLED", "false")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from paysync.config import get_settings

    get_settings.cache_clear()

    from paysync.main import app

    return TestClient(app)


def _hmac_hex(secret: str, message: bytes, digest) -> str:
    return hmac.new(secret.encode(), message, digest).hexdigest()


def stripe_signature(
    payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None
) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    return f"t={ts},v1={_hmac_hex(secret, signed, hashlib.sha256)}"


def paddle_signature(
    payload: bytes, secret: str = PADDLE_WEBHOOK_SECRET, timestamp: int = 1767225600
) -> str:
    signed = f"{timestamp}:".encode() + payload
    return f"ts={timestamp};h1={_hmac_hex(secret, signed, hashlib.sha256)}"


def paymob_transaction(
    *,
    transaction_id: int | str = 1001,
    amount_cents: int = 29900,
    success: bool = True,
    pending: bool = False,
    error_occured: bool = False,
    is_voided: bool = False,
    is_refunded: bool = False,
    account_id: str = "acct-1",
    plan: str = "pro",
    billing: str = "monthly",
) -> dict:
    return {
        "id": transaction_id,
        "pending": pending,
        "amount_cents": amount_cents,
        "success": success,
        "is_auth": False,
        "is_capture": False,
        "is_standalone_payment": True,
        "is_voided": is_voided,
        "is_refunded": is_refunded,
        "is_3d_secure": True,
        "integration_id": 42,
        "has_parent_transaction": False,
        "order": {"id": 555, "merchant_order_id": f"{account_id}_{plan}_{billing}_1767225600"},
        "created_at": "2026-02-22T12:00:00.000000",
        "currency": "EGP",
        "source_data": {"pan": "2346", "sub_type": "MasterCard", "type": "card"},
        "error_occured": error_occured,
        "owner": 7,
        "billing_data": {"email": "buyer@example.com"},
    }


def paymob_body(transaction: dict, secret: str = PAYMOB_HMAC_SECRET) -> bytes:
    """Serialize a signed Paymob callback with the hmac in the body."""
    from paysync.gateways.signatures import paymob_signature_message

    signature = _hmac_hex(secret, paymob_signature_message(transaction).encode(), hashlib.sha512)
    return json.dumps({"type": "TRANSACTION", "obj": transaction, "hmac": signature}).encode()


@pytest.fixture
def signers() -> SimpleNamespace:
    """Helpers that produce valid gateway signatures for test payloads."""
    return SimpleNamespace(
        stripe=stripe_signature,
        paddle=paddle_signature,
        paymob_transaction=paymob_transaction,
        paymob_body=paymob_body,
    )
