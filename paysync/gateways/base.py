"""Gateway adapter contract shared by all payment providers."""

import json
from datetime import UTC, datetime
from typing import Any, Mapping

from paysync.exceptions import ParseError
from paysync.gateways.signatures import SignatureVerifier
from paysync.models.billing import (
    BillingCycle,
    Gateway,
    PaymentEvent,
    PlanTier,
    RedirectOutcome,
    RemoteCancelResult,
)


def load_payload(raw_body: bytes) -> dict[str, Any]:
    """Decode a webhook body into a JSON object or raise ParseError."""
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ParseError(f"Invalid JSON payload: {e}") from e
    if not isinstance(payload, dict):
        raise ParseError("Webhook payload must be a JSON object")
    return payload


def parse_plan(value: Any, default: PlanTier | None = None) -> PlanTier | None:
    """Map a provider-supplied plan label to a paid tier."""
    normalized = str(value or "").strip().lower()
    try:
        plan = PlanTier(normalized)
    except ValueError:
        return default
    return plan if plan is not PlanTier.FREE else default


def parse_cycle(value: Any, default: BillingCycle | None = None) -> BillingCycle | None:
    normalized = str(value or "").strip().lower()
    aliases = {"month": "monthly", "year": "yearly", "annual": "yearly", "annually": "yearly"}
    normalized = aliases.get(normalized, normalized)
    try:
        return BillingCycle(normalized)
    except ValueError:
        return default


def as_dict(value: Any) -> dict[str, Any]:
    """Return `value` if it is a JSON object, else an empty dict."""
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def as_text(value: Any) -> str | None:
    """Coerce a scalar hint field to a string; objects and blanks become None."""
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def to_datetime(value: Any) -> datetime | None:
    """Accept unix seconds or ISO-8601 strings; anything else is None."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


class GatewayAdapter:
    """Base class for the four payment gateway adapters.

    Subclasses set `name`, `signature_required` and `signature_header`, and
    implement `parse`. Providers without a subscription API keep the default
    local-only `cancel_remote` / `resume_remote`.
    """

    name: Gateway
    signature_required: bool = True
    signature_header: str = ""
    # Query parameter or top-level body field that may carry the signature
    signature_query_param: str | None = None
    signature_body_field: str | None = None

    def __init__(self, verifier: SignatureVerifier | None = None) -> None:
        self.verifier = verifier or SignatureVerifier()

    @property
    def shared_secret(self) -> str:
        raise NotImplementedError

    @property
    def configured(self) -> bool:
        return bool(self.shared_secret)

    def extract_signature(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
        raw_body: bytes = b"",
    ) -> str | None:
        """Locate the signature in the header, query string or body, in that order."""
        signature = headers.get(self.signature_header) if self.signature_header else None
        if not signature and self.signature_query_param:
            signature = query.get(self.signature_query_param)
        if not signature and self.signature_body_field and raw_body:
            try:
                payload = json.loads(raw_body)
            except (ValueError, UnicodeDecodeError):
                return None
            if isinstance(payload, dict):
                value = payload.get(self.signature_body_field)
                signature = str(value) if value else None
        return signature or None

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        return self.verifier.verify(self.name, raw_body, signature, self.shared_secret)

    def parse(self, raw_body: bytes) -> PaymentEvent:
        raise NotImplementedError

    async def cancel_remote(
        self, reference: str, *, at_period_end: bool = False
    ) -> RemoteCancelResult:
        return RemoteCancelResult(
            ok=True,
            performed=False,
            detail=f"{self.name.value} has no provider-side subscription to cancel",
        )

    async def resume_remote(self, reference: str) -> RemoteCancelResult:
        return RemoteCancelResult(
            ok=True,
            performed=False,
            detail=f"{self.name.value} has no provider-side subscription to resume",
        )

    def interpret_return(self, query: Mapping[str, str]) -> RedirectOutcome:
        raise NotImplementedError
