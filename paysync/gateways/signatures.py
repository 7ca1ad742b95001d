"""
Webhook signature verification.

Every scheme recomputes the expected signature from the raw request body and
the gateway's shared secret, then compares in constant time. Verification
never raises: a malformed header, a missing secret or an undecodable body is
simply an invalid signature.
"""

import hashlib
import hmac
import json
from typing import Any, Callable

import stripe
import structlog

from paysync.constants import PAYMOB_HMAC_FIELDS
from paysync.models.billing import Gateway

logger = structlog.get_logger(__name__)


def _digest_matches(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.lower(), provided.strip().lower())


def _js_string(value: Any) -> str:
    """Render a JSON scalar the way the sender stringifies it before hashing."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _dotted(obj: dict, path: str) -> Any:
    current: Any = obj
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _load_json(raw_body: bytes) -> dict:
    payload = json.loads(raw_body)
    if not isinstance(payload, dict):
        raise ValueError("payload is not a JSON object")
    return payload


def verify_stripe(
    raw_body: bytes, signature: str, secret: str, tolerance: int = 300
) -> bool:
    """`Stripe-Signature: t=..,v1=..` checked by the Stripe SDK."""
    try:
        stripe.WebhookSignature.verify_header(
            raw_body.decode("utf-8"), signature, secret, tolerance=tolerance
        )
    except stripe.SignatureVerificationError:
        return False
    return True


def paytabs_signature_message(payload: dict, server_key: str) -> str:
    return "".join(
        _js_string(part)
        for part in (
            server_key,
            payload.get("tran_ref"),
            payload.get("cart_id"),
            payload.get("cart_amount"),
            payload.get("cart_currency"),
            _dotted(payload, "customer_details.email"),
            _dotted(payload, "payment_result.response_status"),
        )
    )


def verify_paytabs(raw_body: bytes, signature: str, secret: str) -> bool:
    """SHA-256 over server key + selected callback fields."""
    payload = _load_json(raw_body)
    message = paytabs_signature_message(payload, secret)
    expected = hashlib.sha256(message.encode("utf-8")).hexdigest()
    return _digest_matches(expected, signature)


def paymob_signature_message(transaction: dict) -> str:
    return "".join(_js_string(_dotted(transaction, field)) for field in PAYMOB_HMAC_FIELDS)


def verify_paymob(raw_body: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA512 over the fixed-order concatenation of transaction fields."""
    payload = _load_json(raw_body)
    transaction = payload.get("obj")
    if not isinstance(transaction, dict):
        return False
    message = paymob_signature_message(transaction)
    expected = hmac.new(
        secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512
    ).hexdigest()
    return _digest_matches(expected, signature)


def parse_paddle_header(signature: str) -> tuple[str, str] | None:
    """Split `ts=...;h1=...` into (ts, h1)."""
    parts: dict[str, str] = {}
    for item in signature.split(";"):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    ts = parts.get("ts")
    h1 = parts.get("h1")
    if not ts or not h1:
        return None
    return ts, h1


def verify_paddle(raw_body: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA256 over `{ts}:{raw_body}`."""
    parsed = parse_paddle_header(signature)
    if parsed is None:
        return False
    ts, h1 = parsed
    signed = f"{ts}:".encode("utf-8") + raw_body
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return _digest_matches(expected, h1)


_SCHEMES: dict[Gateway, Callable[[bytes, str, str], bool]] = {
    Gateway.STRIPE: verify_stripe,
    Gateway.PAYTABS: verify_paytabs,
    Gateway.PAYMOB: verify_paymob,
    Gateway.PADDLE: verify_paddle,
}


class SignatureVerifier:
    """Dispatches to the signature scheme of each gateway."""

    def __init__(self, stripe_tolerance_seconds: int = 300) -> None:
        self.stripe_tolerance_seconds = stripe_tolerance_seconds

    def verify(
        self,
        gateway: Gateway,
        raw_body: bytes,
        signature: str | None,
        shared_secret: str,
    ) -> bool:
        if not signature or not shared_secret:
            logger.warning(
                "webhook_signature_invalid",
                gateway=gateway.value,
                reason="missing signature or secret",
            )
            return False

        try:
            if gateway is Gateway.STRIPE:
                valid = verify_stripe(
                    raw_body,
                    signature,
                    shared_secret,
                    tolerance=self.stripe_tolerance_seconds,
                )
            else:
                valid = _SCHEMES[gateway](raw_body, signature, shared_secret)
        except (ValueError, TypeError, KeyError, UnicodeDecodeError) as e:
            logger.warning(
                "webhook_signature_invalid",
                gateway=gateway.value,
                reason="undecodable payload",
                error=str(e),
            )
            return False

        if not valid:
            logger.warning(
                "webhook_signature_invalid",
                gateway=gateway.value,
                reason="signature mismatch",
            )
        return valid
