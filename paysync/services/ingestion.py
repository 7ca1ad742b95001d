"""
Webhook ingestion: verify → parse → resolve account → claim → apply.

The sender retries on any non-2xx response; idempotency is guaranteed by the
(gateway, external transaction id) claim plus the transaction-id check in the
state machine, so there is no internal retry queue.
"""

from typing import Mapping

import structlog
from pydantic import ValidationError

from paysync.exceptions import (
    GatewayNotConfiguredError,
    IgnoredNotification,
    ParseError,
    UnresolvableAccountError,
)
from paysync.gateways.base import GatewayAdapter
from paysync.gateways.registry import get_adapter
from paysync.models.billing import Gateway, IngestOutcome, PaymentEvent
from paysync.services.accounts import AccountResolver
from paysync.services.idempotency import IdempotencyLedger
from paysync.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


class WebhookIngestor:
    """Turns raw webhook deliveries into applied subscription transitions."""

    def __init__(
        self,
        adapters: Mapping[Gateway, GatewayAdapter],
        ledger: IdempotencyLedger,
        accounts: AccountResolver,
        subscriptions: SubscriptionService,
    ) -> None:
        self.adapters = dict(adapters)
        self.ledger = ledger
        self.accounts = accounts
        self.subscriptions = subscriptions

    def _configured_adapter(self, gateway: str | Gateway) -> GatewayAdapter:
        """Look up the adapter; raises ValueError or GatewayNotConfiguredError."""
        adapter = get_adapter(self.adapters, gateway)
        if not adapter.configured:
            raise GatewayNotConfiguredError(f"gateway {adapter.name.value} is not configured")
        return adapter

    async def _bind_account(self, event: PaymentEvent) -> PaymentEvent:
        account_id = await self.accounts.resolve(event)
        if not account_id:
            raise UnresolvableAccountError("account could not be resolved")
        return event.model_copy(update={"account_id": account_id})

    async def ingest(
        self, gateway: str | Gateway, raw_body: bytes, signature: str | None
    ) -> IngestOutcome:
        """Verify, parse, resolve and claim one delivery.

        Never mutates subscription state. An `applied` outcome means the
        caller now owns the idempotency claim for the event. Raises
        GatewayNotConfiguredError when the gateway has no credentials.
        """
        try:
            adapter = self._configured_adapter(gateway)
        except ValueError as e:
            return IngestOutcome.rejected(str(e))

        gateway_name = adapter.name.value
        if adapter.signature_required or signature:
            if not adapter.verify(raw_body, signature):
                return IngestOutcome.rejected("invalid signature")

        try:
            event = adapter.parse(raw_body)
        except IgnoredNotification as e:
            logger.info("webhook_ignored", gateway=gateway_name, reason=str(e))
            return IngestOutcome.ignored(str(e))
        except ParseError as e:
            logger.warning("webhook_parse_failed", gateway=gateway_name, error=str(e))
            return IngestOutcome.rejected(str(e))
        except ValidationError as e:
            # Well-formed JSON whose fields have the wrong type
            logger.warning(
                "webhook_parse_failed",
                gateway=gateway_name,
                error=str(e),
                error_count=e.error_count(),
            )
            return IngestOutcome.rejected(f"invalid {gateway_name} payload")

        try:
            event = await self._bind_account(event)
        except UnresolvableAccountError as e:
            logger.warning(
                "webhook_account_unresolved",
                gateway=gateway_name,
                transaction_id=event.external_transaction_id,
                event_type=event.provider_event_type,
            )
            return IngestOutcome.rejected(str(e))

        claimed = await self.ledger.claim(
            adapter.name, event.external_transaction_id, event.kind
        )
        if not claimed:
            logger.info(
                "webhook_duplicate",
                gateway=gateway_name,
                transaction_id=event.external_transaction_id,
            )
            return IngestOutcome.duplicate(event)

        return IngestOutcome.applied(event)

    async def process(
        self, gateway: str | Gateway, raw_body: bytes, signature: str | None
    ) -> IngestOutcome:
        """Ingest and, for a fresh claim, apply and mark the key applied.

        If the state machine raises, the claim is released so a redelivery
        can re-apply, and the error propagates to the caller.
        """
        outcome = await self.ingest(gateway, raw_body, signature)
        if outcome.status != "applied" or outcome.event is None:
            return outcome

        event = outcome.event
        try:
            await self.subscriptions.apply(event)
        except Exception:
            await self.ledger.release(event.gateway, event.external_transaction_id)
            logger.exception(
                "webhook_apply_failed",
                gateway=event.gateway.value,
                transaction_id=event.external_transaction_id,
            )
            raise

        await self.ledger.mark_applied(event.gateway, event.external_transaction_id)
        logger.info(
            "webhook_processed",
            gateway=event.gateway.value,
            transaction_id=event.external_transaction_id,
            kind=event.kind.value,
            account_id=event.account_id,
            event_type=event.provider_event_type,
        )
        return outcome
