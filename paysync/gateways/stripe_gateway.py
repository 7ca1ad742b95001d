"""Stripe (card processor) adapter."""

import asyncio
from typing import Any, Mapping

import stripe
import structlog

from paysync.config import StripeConfig
from paysync.constants import STRIPE_EVENT_KINDS
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

_NOT_CONFIGURED = RemoteCancelResult(
    ok=False, performed=False, detail="Stripe secret key is not configured"
)


def _invoice_subscription(invoice: dict[str, Any]) -> tuple[str | None, dict[str, Any]]:
    """Return (subscription id, subscription metadata) from either invoice shape.

    Older API versions expose `invoice.subscription`; newer ones nest it under
    `parent.subscription_details`.
    """
    details = (
        as_dict(as_dict(invoice.get("parent")).get("subscription_details"))
        or as_dict(invoice.get("subscription_details"))
    )
    subscription = details.get("subscription") or invoice.get("subscription")
    metadata = as_dict(details.get("metadata"))
    if isinstance(subscription, dict):
        metadata = as_dict(subscription.get("metadata")) or metadata
        subscription = subscription.get("id")
    return as_text(subscription), metadata


def _first_line_price(invoice: dict[str, Any]) -> str | None:
    lines = as_list(as_dict(invoice.get("lines")).get("data"))
    if not lines:
        return None
    line = as_dict(lines[0])
    price = line.get("price")
    if isinstance(price, dict) and price.get("id"):
        return as_text(price["id"])
    pricing = as_dict(as_dict(line.get("pricing")).get("price_details"))
    return as_text(pricing.get("price"))


def _first_item_price(subscription: dict[str, Any]) -> str | None:
    items = as_list(as_dict(subscription.get("items")).get("data"))
    if not items:
        return None
    return as_text(as_dict(as_dict(items[0]).get("price")).get("id"))


class StripeGateway(GatewayAdapter):
    """Maps Stripe invoice / subscription events onto canonical events."""

    name = Gateway.STRIPE
    signature_required = True
    signature_header = "Stripe-Signature"

    def __init__(self, config: StripeConfig, verifier: SignatureVerifier | None = None) -> None:
        super().__init__(
            verifier or SignatureVerifier(config.signature_tolerance_seconds)
        )
        self.config = config
        if config.secret_key:
            stripe.api_key = config.secret_key

    @property
    def shared_secret(self) -> str:
        return self.config.webhook_secret

    @property
    def price_mapping(self) -> dict[str, tuple[PlanTier, BillingCycle]]:
        mapping = {
            self.config.price_pro_monthly: (PlanTier.PRO, BillingCycle.MONTHLY),
            self.config.price_pro_yearly: (PlanTier.PRO, BillingCycle.YEARLY),
            self.config.price_team_monthly: (PlanTier.TEAM, BillingCycle.MONTHLY),
            self.config.price_team_yearly: (PlanTier.TEAM, BillingCycle.YEARLY),
            self.config.price_enterprise_monthly: (PlanTier.ENTERPRISE, BillingCycle.MONTHLY),
            self.config.price_enterprise_yearly: (PlanTier.ENTERPRISE, BillingCycle.YEARLY),
        }
        return {price_id: plan for price_id, plan in mapping.items() if price_id}

    def _plan_for(
        self, price_id: str | None, metadata: dict[str, Any]
    ) -> tuple[PlanTier, BillingCycle]:
        if price_id and price_id in self.price_mapping:
            return self.price_mapping[price_id]
        plan = parse_plan(metadata.get("plan"), PlanTier.PRO)
        cycle = parse_cycle(metadata.get("billing"), BillingCycle.MONTHLY)
        return plan, cycle

    def parse(self, raw_body: bytes) -> PaymentEvent:
        event = load_payload(raw_body)
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        data_object = as_dict(event.get("data")).get("object")
        if not event_id or not event_type or not isinstance(data_object, dict):
            raise ParseError("Stripe event is missing id, type or data.object")

        kind = STRIPE_EVENT_KINDS.get(event_type)
        if kind is None:
            raise IgnoredNotification(f"Stripe event '{event_type}' is not handled")

        occurred_at = to_datetime(event.get("created"))

        if kind is PaymentEventKind.SUBSCRIPTION_CANCELED:
            metadata = as_dict(data_object.get("metadata"))
            plan, cycle = self._plan_for(_first_item_price(data_object), metadata)
            return PaymentEvent(
                kind=kind,
                gateway=self.name,
                external_transaction_id=event_id,
                plan=plan,
                billing_cycle=cycle,
                occurred_at=occurred_at,
                account_reference=as_text(metadata.get("user_id")),
                external_customer_id=as_text(data_object.get("customer")),
                external_subscription_id=as_text(data_object.get("id")),
                provider_event_type=event_type,
            )

        invoice_id = as_text(data_object.get("id"))
        if not invoice_id:
            raise ParseError("Stripe invoice is missing id")
        subscription_id, metadata = _invoice_subscription(data_object)
        plan, cycle = self._plan_for(_first_line_price(data_object), metadata)

        if kind is PaymentEventKind.CHARGE_SUCCEEDED:
            transaction_id = invoice_id
            amount = data_object.get("amount_paid")
        else:
            transaction_id = event_id
            amount = data_object.get("amount_due")

        currency = as_text(data_object.get("currency"))
        return PaymentEvent(
            kind=kind,
            gateway=self.name,
            external_transaction_id=transaction_id,
            plan=plan,
            billing_cycle=cycle,
            amount=amount,
            currency=currency.upper() if currency else None,
            occurred_at=occurred_at,
            account_reference=as_text(metadata.get("user_id")),
            customer_email=as_text(data_object.get("customer_email")),
            external_customer_id=as_text(data_object.get("customer")),
            external_subscription_id=subscription_id,
            provider_event_type=event_type,
        )

    async def cancel_remote(
        self, reference: str, *, at_period_end: bool = False
    ) -> RemoteCancelResult:
        if not self.config.secret_key:
            return _NOT_CONFIGURED
        try:
            if at_period_end:
                await asyncio.to_thread(
                    stripe.Subscription.modify, reference, cancel_at_period_end=True
                )
            else:
                await asyncio.to_thread(stripe.Subscription.cancel, reference)
        except stripe.StripeError as e:
            return RemoteCancelResult(ok=False, detail=str(e))
        logger.info(
            "stripe_subscription_cancel_requested",
            subscription_id=reference,
            at_period_end=at_period_end,
        )
        return RemoteCancelResult(ok=True)

    async def resume_remote(self, reference: str) -> RemoteCancelResult:
        if not self.config.secret_key:
            return _NOT_CONFIGURED
        try:
            await asyncio.to_thread(
                stripe.Subscription.modify, reference, cancel_at_period_end=False
            )
        except stripe.StripeError as e:
            return RemoteCancelResult(ok=False, detail=str(e))
        return RemoteCancelResult(ok=True)

    def interpret_return(self, query: Mapping[str, str]) -> RedirectOutcome:
        session_id = query.get("session_id")
        approved = bool(session_id) and query.get("canceled") != "true"
        return RedirectOutcome(approved=approved, reference=session_id)
