"""
Webhook ingestion tests: verify → parse → resolve → claim → apply.

The lifecycle scenarios drive real adapters, the in-memory ledger and the
state machine end to end, with a deterministic clock.
"""

import json
from datetime import UTC, datetime, timedelta

import pytest

from paysync.config import PaymobConfig, Settings
from paysync.exceptions import GatewayNotConfiguredError
from paysync.gateways.paymob import PaymobGateway
from paysync.gateways.registry import build_adapters
from paysync.models.billing import Gateway, SubscriptionStatus
from paysync.services.accounts import InMemoryAccountResolver
from paysync.services.expiration_sweeper import ExpirationSweeper
from paysync.services.idempotency import InMemoryIdempotencyLedger
from paysync.services.ingestion import WebhookIngestor
from paysync.services.subscription_repository import InMemorySubscriptionRepository
from paysync.services.subscription_service import SubscriptionService


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


class Harness:
    """Everything an ingestion test needs, sharing one clock."""

    def __init__(self):
        self.clock = MutableClock(datetime(2026, 2, 22, 12, 0, tzinfo=UTC))
        self.adapters = build_adapters(Settings())
        self.ledger = InMemoryIdempotencyLedger(now_provider=self.clock.now)
        self.accounts = InMemoryAccountResolver()
        self.accounts.add_account("acct-1", "buyer@example.com")
        self.repository = InMemorySubscriptionRepository()
        self.subscriptions = SubscriptionService(
            self.repository, self.adapters, now_provider=self.clock.now
        )
        self.ingestor = WebhookIngestor(
            self.adapters, self.ledger, self.accounts, self.subscriptions
        )
        self.sweeper = ExpirationSweeper(
            self.repository, self.subscriptions, now_provider=self.clock.now
        )

    async def deliver_paymob(self, body: bytes):
        signature = self.adapters[Gateway.PAYMOB].extract_signature({}, {}, body)
        return await self.ingestor.process("paymob", body, signature)

    async def row(self):
        return await self.repository.get("acct-1", Gateway.PAYMOB)


@pytest.fixture
def harness() -> Harness:
    return Harness()


class TestLifecycleScenarios:
    async def test_new_monthly_pro_subscription(self, harness: Harness, signers):
        body = signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))

        outcome = await harness.deliver_paymob(body)

        assert outcome.status == "applied"
        row = await harness.row()
        assert row.status is SubscriptionStatus.ACTIVE
        assert row.current_period_start == harness.clock.now()
        assert row.current_period_end == harness.clock.now() + timedelta(days=30)
        assert row.external_transaction_id == "TXN-1"
        assert row.last_payment_amount == 29900
        assert row.last_payment_currency == "EGP"

    async def test_redelivery_is_a_duplicate(self, harness: Harness, signers):
        body = signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))
        await harness.deliver_paymob(body)
        first = await harness.row()
        harness.clock.advance(timedelta(hours=2))

        outcome = await harness.deliver_paymob(body)

        assert outcome.status == "duplicate"
        assert await harness.row() == first

    async def test_charge_failed_moves_to_past_due(self, harness: Harness, signers):
        await harness.deliver_paymob(
            signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))
        )
        active = await harness.row()

        outcome = await harness.deliver_paymob(
            signers.paymob_body(
                signers.paymob_transaction(transaction_id="TXN-1F", success=False)
            )
        )

        assert outcome.status == "applied"
        row = await harness.row()
        assert row.status is SubscriptionStatus.PAST_DUE
        assert row.current_period_end == active.current_period_end

    async def test_renewal_after_past_due(self, harness: Harness, signers):
        await harness.deliver_paymob(
            signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))
        )
        await harness.deliver_paymob(
            signers.paymob_body(
                signers.paymob_transaction(transaction_id="TXN-1F", success=False)
            )
        )
        await harness.subscriptions.cancel_at_period_end("acct-1")
        harness.clock.advance(timedelta(days=25))

        await harness.deliver_paymob(
            signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-2"))
        )

        row = await harness.row()
        assert row.status is SubscriptionStatus.ACTIVE
        assert row.current_period_start == harness.clock.now()
        assert row.current_period_end == harness.clock.now() + timedelta(days=30)
        assert row.cancel_at_period_end is False
        assert row.external_transaction_id == "TXN-2"

    async def test_cancel_at_period_end_then_sweep(self, harness: Harness, signers):
        await harness.deliver_paymob(
            signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))
        )
        await harness.subscriptions.cancel_at_period_end("acct-1")
        harness.clock.advance(timedelta(days=30, minutes=1))

        report = await harness.sweeper.sweep_once()

        assert report.canceled == 1
        row = await harness.row()
        assert row.status is SubscriptionStatus.CANCELED
        assert row.canceled_at == harness.clock.now()

    async def test_tampered_payload_is_rejected(self, harness: Harness, signers):
        body = signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))
        payload = json.loads(body)
        payload["obj"]["amount_cents"] = 100
        tampered = json.dumps(payload).encode()

        outcome = await harness.deliver_paymob(tampered)

        assert outcome.status == "rejected"
        assert await harness.row() is None
        assert await harness.ledger.get(Gateway.PAYMOB, "TXN-1") is None


class TestIngestOutcomes:
    async def test_unsigned_payload_to_mandatory_gateway(self, harness: Harness, signers):
        body = signers.paymob_body(signers.paymob_transaction())

        outcome = await harness.ingestor.process("paymob", body, None)

        assert outcome.status == "rejected"
        assert harness.ledger.records == {}

    async def test_unknown_gateway(self, harness: Harness):
        outcome = await harness.ingestor.process("paypal", b"{}", None)

        assert outcome.status == "rejected"
        assert "unsupported gateway" in outcome.reason

    async def test_pending_transaction_is_ignored(self, harness: Harness, signers):
        body = signers.paymob_body(signers.paymob_transaction(pending=True))

        outcome = await harness.deliver_paymob(body)

        assert outcome.status == "ignored"
        assert harness.ledger.records == {}

    async def test_unresolved_account(self, harness: Harness, signers):
        transaction = signers.paymob_transaction(account_id="stranger")
        transaction["billing_data"] = {"email": "nobody@example.com"}

        outcome = await harness.deliver_paymob(signers.paymob_body(transaction))

        assert outcome.status == "rejected"
        assert outcome.reason == "account could not be resolved"
        assert harness.ledger.records == {}

    async def test_account_resolved_by_email(self, harness: Harness, signers):
        transaction = signers.paymob_transaction(account_id="unknown")

        outcome = await harness.deliver_paymob(signers.paymob_body(transaction))

        assert outcome.status == "applied"
        assert outcome.event.account_id == "acct-1"

    async def test_malformed_json_is_rejected(self, harness: Harness):
        outcome = await harness.ingestor.process("paytabs", b"not json", None)

        assert outcome.status == "rejected"

    async def test_unsigned_paytabs_callback_is_accepted(self, harness: Harness):
        body = json.dumps(
            {
                "tran_ref": "TST1",
                "cart_amount": "299.00",
                "cart_currency": "AED",
                "payment_result": {"response_status": "A"},
                "user_defined": {"udf1": "acct-1", "udf2": "pro", "udf3": "monthly"},
            }
        ).encode()

        outcome = await harness.ingestor.process("paytabs", body, None)

        assert outcome.status == "applied"
        row = await harness.repository.get("acct-1", Gateway.PAYTABS)
        assert row.status is SubscriptionStatus.ACTIVE

    async def test_paytabs_signature_checked_when_present(self, harness: Harness):
        body = json.dumps(
            {"tran_ref": "TST1", "payment_result": {"response_status": "A"}}
        ).encode()

        outcome = await harness.ingestor.process("paytabs", body, "deadbeef")

        assert outcome.status == "rejected"
        assert outcome.reason == "invalid signature"

    async def test_paytabs_numeric_account_hint_does_not_crash(self, harness: Harness):
        body = json.dumps(
            {
                "tran_ref": "TST9",
                "cart_amount": "299.00",
                "cart_currency": "AED",
                "customer_details": {"email": "buyer@example.com"},
                "payment_result": {"response_status": "A"},
                "user_defined": {"udf1": 123},
            }
        ).encode()

        outcome = await harness.ingestor.process("paytabs", body, None)

        # udf1 "123" is not a known account; the email resolves it
        assert outcome.status == "applied"
        assert outcome.event.account_id == "acct-1"

    async def test_wrongly_typed_field_is_rejected_not_raised(
        self, harness: Harness, signers
    ):
        body = signers.paymob_body(
            signers.paymob_transaction(transaction_id="TXN-1", amount_cents="lots")
        )

        outcome = await harness.deliver_paymob(body)

        assert outcome.status == "rejected"
        assert outcome.reason == "invalid paymob payload"
        assert await harness.ledger.get(Gateway.PAYMOB, "TXN-1") is None

    async def test_unconfigured_gateway_raises(self, harness: Harness, signers):
        harness.ingestor.adapters[Gateway.PAYMOB] = PaymobGateway(PaymobConfig())
        body = signers.paymob_body(signers.paymob_transaction())

        with pytest.raises(GatewayNotConfiguredError):
            await harness.ingestor.process("paymob", body, None)

        assert harness.repository.rows == {}

    async def test_paddle_end_to_end(self, harness: Harness, signers):
        body = json.dumps(
            {
                "event_id": "evt_01",
                "event_type": "transaction.completed",
                "occurred_at": "2026-02-22T12:00:00Z",
                "data": {
                    "id": "txn_01",
                    "currency_code": "USD",
                    "custom_data": {"userId": "acct-1", "plan": "team"},
                    "details": {"totals": {"total": "4900"}},
                },
            }
        ).encode()

        outcome = await harness.ingestor.process("paddle", body, signers.paddle(body))

        assert outcome.status == "applied"
        row = await harness.repository.get("acct-1", Gateway.PADDLE)
        assert row.plan.value == "team"
        record = await harness.ledger.get(Gateway.PADDLE, "txn_01")
        assert record.status.value == "applied"


class TestApplyFailure:
    async def test_claim_released_when_apply_fails(self, harness: Harness, signers):
        async def broken_apply(event):
            raise RuntimeError("database unavailable")

        harness.subscriptions.apply = broken_apply
        body = signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))

        with pytest.raises(RuntimeError):
            await harness.deliver_paymob(body)

        assert await harness.ledger.get(Gateway.PAYMOB, "TXN-1") is None

    async def test_redelivery_after_failure_applies(self, harness: Harness, signers):
        original_apply = harness.subscriptions.apply
        calls = 0

        async def flaky_apply(event):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("database unavailable")
            return await original_apply(event)

        harness.subscriptions.apply = flaky_apply
        body = signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))

        with pytest.raises(RuntimeError):
            await harness.deliver_paymob(body)
        outcome = await harness.deliver_paymob(body)

        assert outcome.status == "applied"
        assert (await harness.row()).status is SubscriptionStatus.ACTIVE
