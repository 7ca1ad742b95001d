"""
Paddle Billing (merchant of record) adapter.

Webhooks are verified with the `Paddle-Signature: ts=...;h1=...` header.
Remote cancellation goes through the Paddle REST API:

    POST /subscriptions/{id}/cancel   {"effective_from": "immediately" | "next_billing_period"}
    PATCH /subscriptions/{id}         {"scheduled_change": null}   (resume)
"""

from typing import Any, Mapping

import httpx
import structlog

from paysync.config import PaddleConfig
from paysync.constants import PADDLE_EVENT_KINDS
from paysync.exceptions import IgnoredNotification, ParseError
from paysync.gateways.base import (
    GatewayAdapter,
    as_dict,
    as_list,
    as_text,
    load_payload,
    parse_cycle,
    parse_plan,
    to_datetime,
)
from paysync.gateways.signatures import SignatureVerifier
from paysync.models.billing import (
    BillingCycle,
    Gateway,
    PaymentEvent,
    PaymentEventKind,
    PlanTier,
    RedirectOutcome,
    RemoteCancelResult,
)

logger = structlog.get_logger(__name__)


def _item_interval(data: dict[str, Any]) -> str | None:
    items = as_list(data.get("items"))
    if not items:
        return None
    billing_cycle = as_dict(as_dict(as_dict(items[0]).get("price")).get("billing_cycle"))
    return as_text(billing_cycle.get("interval"))


def _amount(data: dict[str, Any]) -> int | None:
    total = as_dict(as_dict(data.get("details")).get("totals")).get("total")
    if total in (None, ""):
        return None
    try:
        return int(total)
    except (TypeError, ValueError, OverflowError) as e:
        raise ParseError(f"Invalid Paddle totals.total '{total}'") from e


class PaddleGateway(GatewayAdapter):
    name = Gateway.PADDLE
    signature_required = True
    signature_header = "Paddle-Signature"

    def __init__(
        self,
        config: PaddleConfig,
        verifier: SignatureVerifier | None = None,
        *,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(verifier)
        self.config = config
        self._client = http_client or httpx.AsyncClient(
            base_url=config.api_base_url,
            timeout=timeout_seconds,
            headers={"Authorization": f"Bearer {config.api_key}"},
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    @property
    def shared_secret(self) -> str:
        return self.config.webhook_secret

    def parse(self, raw_body: bytes) -> PaymentEvent:
        payload = load_payload(raw_body)
        event_id = as_text(payload.get("event_id"))
        event_type = str(payload.get("event_type") or "")
        data = payload.get("data")
        if not event_id or not event_type or not isinstance(data, dict):
            raise ParseError("Paddle event is missing event_id, event_type or data")

        kind = PADDLE_EVENT_KINDS.get(event_type)
        if kind is None:
            raise IgnoredNotification(f"Paddle event '{event_type}' is not handled")

        custom_data = as_dict(data.get("custom_data"))
        occurred_at = to_datetime(payload.get("occurred_at"))
        plan = parse_plan(custom_data.get("plan"), PlanTier.PRO)
        cycle = parse_cycle(
            custom_data.get("billing") or _item_interval(data), BillingCycle.MONTHLY
        )
        account_reference = as_text(custom_data.get("userId")) or as_text(
            custom_data.get("user_id")
        )
        customer_email = as_text(custom_data.get("userEmail")) or as_text(
            custom_data.get("email")
        )

        if kind is PaymentEventKind.SUBSCRIPTION_CANCELED:
            return PaymentEvent(
                kind=kind,
                gateway=self.name,
                external_transaction_id=event_id,
                plan=plan,
                billing_cycle=cycle,
                occurred_at=occurred_at,
                account_reference=account_reference,
                customer_email=customer_email,
                external_customer_id=as_text(data.get("customer_id")),
                external_subscription_id=as_text(data.get("id")),
                provider_event_type=event_type,
            )

        if kind is PaymentEventKind.CHARGE_SUCCEEDED:
            transaction_id = as_text(data.get("id"))
            if not transaction_id:
                raise ParseError("Paddle transaction is missing id")
        else:
            transaction_id = event_id

        currency = as_text(data.get("currency_code"))
        return PaymentEvent(
            kind=kind,
            gateway=self.name,
            external_transaction_id=transaction_id,
            plan=plan,
            billing_cycle=cycle,
            amount=_amount(data),
            currency=currency.upper() if currency else None,
            occurred_at=occurred_at,
            account_reference=account_reference,
            customer_email=customer_email,
            external_customer_id=as_text(data.get("customer_id")),
            external_subscription_id=as_text(data.get("subscription_id")),
            provider_event_type=event_type,
        )

    async def cancel_remote(
        self, reference: str, *, at_period_end: bool = False
    ) -> RemoteCancelResult:
        if not self.config.api_key:
            return RemoteCancelResult(
                ok=False, performed=False, detail="Paddle API key is not configured"
            )
        effective_from = "next_billing_period" if at_period_end else "immediately"
        try:
            response = await self._client.post(
                f"/subscriptions/{reference}/cancel",
                json={"effective_from": effective_from},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            return RemoteCancelResult(ok=False, detail=str(e))
        logger.info(
            "paddle_subscription_cancel_requested",
            subscription_id=reference,
            effective_from=effective_from,
        )
        return RemoteCancelResult(ok=True)

    async def resume_remote(self, reference: str) -> RemoteCancelResult:
        if not self.config.api_key:
            return RemoteCancelResult(
                ok=False, performed=False, detail="Paddle API key is not configured"
            )
        try:
            response = await self._client.patch(
                f"/subscriptions/{reference}",
                json={"scheduled_change": None},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            return RemoteCancelResult(ok=False, detail=str(e))
        return RemoteCancelResult(ok=True)

    def interpret_return(self, query: Mapping[str, str]) -> RedirectOutcome:
        transaction_id = query.get("_ptxn") or query.get("transaction_id")
        return RedirectOutcome(
            approved=bool(transaction_id) and query.get("status") != "failed",
            reference=transaction_id,
        )
