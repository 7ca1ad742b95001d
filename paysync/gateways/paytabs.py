"""PayTabs (MENA regional gateway) adapter.

PayTabs has no recurring-billing object on its side: every period is a
separate hosted-page payment, so cancellation only ever happens locally.
Simplified callbacks carry no signature, which is why verification is
optional here.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from paysync.config import PayTabsConfig
from paysync.constants import PAYTABS_PENDING_STATUSES, PAYTABS_STATUS_KINDS
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
    PlanTier,
    RedirectOutcome,
)


def _minor_units(amount: Any) -> int | None:
    if amount is None or amount == "":
        return None
    try:
        return int((Decimal(str(amount)) * 100).quantize(Decimal("1")))
    except (InvalidOperation, ValueError) as e:
        raise ParseError(f"Invalid PayTabs cart_amount '{amount}'") from e


class PayTabsGateway(GatewayAdapter):
    name = Gateway.PAYTABS
    signature_required = False
    signature_header = "Signature"
    signature_body_field = "signature"

    def __init__(self, config: PayTabsConfig, verifier: SignatureVerifier | None = None) -> None:
        super().__init__(verifier)
        self.config = config

    @property
    def shared_secret(self) -> str:
        return self.config.server_key

    @property
    def configured(self) -> bool:
        return self.config.configured

    def parse(self, raw_body: bytes) -> PaymentEvent:
        payload = load_payload(raw_body)
        tran_ref = as_text(payload.get("tran_ref"))
        payment_result = payload.get("payment_result")
        if not tran_ref or not isinstance(payment_result, dict):
            raise ParseError("PayTabs callback is missing tran_ref or payment_result")

        response_status = str(payment_result.get("response_status") or "").upper()
        if response_status in PAYTABS_PENDING_STATUSES:
            raise IgnoredNotification(f"PayTabs transaction {tran_ref} is {response_status}")
        kind = PAYTABS_STATUS_KINDS.get(response_status)
        if kind is None:
            raise ParseError(f"Unknown PayTabs response_status '{response_status}'")

        user_defined = as_dict(payload.get("user_defined"))
        customer = as_dict(payload.get("customer_details"))
        currency = as_text(payload.get("cart_currency"))

        return PaymentEvent(
            kind=kind,
            gateway=self.name,
            external_transaction_id=tran_ref,
            plan=parse_plan(user_defined.get("udf2"), PlanTier.PRO),
            billing_cycle=parse_cycle(user_defined.get("udf3"), BillingCycle.MONTHLY),
            amount=_minor_units(payload.get("cart_amount")),
            currency=currency.upper() if currency else None,
            occurred_at=to_datetime(payment_result.get("transaction_time")),
            account_reference=as_text(user_defined.get("udf1")),
            customer_email=as_text(customer.get("email")),
            provider_event_type=f"payment_result.{response_status}",
        )

    def interpret_return(self, query: Mapping[str, str]) -> RedirectOutcome:
        return RedirectOutcome(
            approved=query.get("respStatus") == "A",
            reference=query.get("tranRef"),
        )
