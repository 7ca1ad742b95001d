"""Paymob (Egypt regional gateway) adapter."""

import hashlib
import hmac
from typing import Any, Mapping

import structlog

from paysync.config import PaymobConfig
from paysync.constants import PAYMOB_HMAC_FIELDS
from paysync.exceptions import IgnoredNotification, ParseError
from paysync.gateways.base import (
    GatewayAdapter,
    as_dict,
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
)

logger = structlog.get_logger(__name__)


def parse_special_reference(reference: Any) -> dict[str, str]:
    """Split `<account>_<plan>_<billing>_<ts>` into its parts.

    Splits from the right so account ids containing underscores survive.
    """
    if not isinstance(reference, str) or reference.count("_") < 3:
        return {}
    account, plan, billing, _ts = reference.rsplit("_", 3)
    if not account:
        return {}
    return {"account": account, "plan": plan, "billing": billing}


def _extras(transaction: dict[str, Any]) -> dict[str, Any]:
    claims = as_dict(transaction.get("payment_key_claims"))
    return as_dict(claims.get("extra"))


class PaymobGateway(GatewayAdapter):
    name = Gateway.PAYMOB
    signature_required = True
    signature_query_param = "hmac"
    signature_body_field = "hmac"

    def __init__(self, config: PaymobConfig, verifier: SignatureVerifier | None = None) -> None:
        super().__init__(verifier)
        self.config = config

    @property
    def shared_secret(self) -> str:
        return self.config.hmac_secret

    @staticmethod
    def _classify(transaction: dict[str, Any]) -> PaymentEventKind:
        if transaction.get("pending") is True:
            raise IgnoredNotification(f"Paymob transaction {transaction.get('id')} is pending")
        if transaction.get("is_voided") or transaction.get("is_refunded"):
            return PaymentEventKind.SUBSCRIPTION_CANCELED
        if transaction.get("success") is True and not transaction.get("error_occured"):
            return PaymentEventKind.CHARGE_SUCCEEDED
        return PaymentEventKind.CHARGE_FAILED

    def parse(self, raw_body: bytes) -> PaymentEvent:
        payload = load_payload(raw_body)
        transaction = as_dict(payload.get("obj"))
        transaction_id = as_text(transaction.get("id"))
        if not transaction_id:
            raise ParseError("Paymob callback is missing obj.id")

        kind = self._classify(transaction)

        order = as_dict(transaction.get("order"))
        extras = _extras(transaction)
        reference = parse_special_reference(
            order.get("merchant_order_id") or transaction.get("special_reference")
        )
        billing_data = as_dict(transaction.get("billing_data")) or as_dict(
            order.get("shipping_data")
        )

        account_reference = (
            as_text(extras.get("user_id"))
            or as_text(extras.get("account_id"))
            or reference.get("account")
        )
        plan = parse_plan(extras.get("plan") or reference.get("plan"), PlanTier.PRO)
        cycle = parse_cycle(
            extras.get("billing") or reference.get("billing"), BillingCycle.MONTHLY
        )
        currency = as_text(transaction.get("currency")) or self.config.currency

        return PaymentEvent(
            kind=kind,
            gateway=self.name,
            external_transaction_id=transaction_id,
            plan=plan,
            billing_cycle=cycle,
            amount=transaction.get("amount_cents"),
            currency=currency.upper(),
            occurred_at=to_datetime(transaction.get("created_at")),
            account_reference=account_reference,
            customer_email=as_text(billing_data.get("email")) or as_text(extras.get("email")),
            provider_event_type=str(payload.get("type") or "TRANSACTION"),
        )

    def _return_signature_valid(self, query: Mapping[str, str]) -> bool:
        provided = query.get("hmac")
        if not provided or not self.shared_secret:
            return True
        # The redirect flattens the transaction: `order` holds order.id
        message = "".join(
            query.get("order" if field == "order.id" else field) or ""
            for field in PAYMOB_HMAC_FIELDS
        )
        expected = hmac.new(
            self.shared_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512
        ).hexdigest()
        return hmac.compare_digest(expected, provided.lower())

    def interpret_return(self, query: Mapping[str, str]) -> RedirectOutcome:
        signature_valid = self._return_signature_valid(query)
        if not signature_valid:
            logger.warning(
                "webhook_signature_invalid",
                gateway=self.name.value,
                reason="redirect hmac mismatch",
                transaction_id=query.get("id"),
            )
        return RedirectOutcome(
            approved=signature_valid and query.get("success") == "true",
            reference=query.get("id"),
            signature_valid=signature_valid,
        )
