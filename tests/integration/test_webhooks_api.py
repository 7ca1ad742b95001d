"""Integration tests for the gateway webhook and return endpoints."""

import json
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from paysync.config import Settings
from paysync.exceptions import ConcurrentUpdateError
from paysync.main import build_services
from paysync.models.billing import Gateway, SubscriptionStatus


def _wire(client: TestClient, settings: Settings | None = None) -> dict:
    """Install freshly built in-memory services on app.state."""
    services = build_services(settings or Settings(), None)
    for name, service in services.items():
        setattr(client.app.state, name, service)
    client.app.state.settings = settings or Settings()
    services["account_resolver"].add_account("acct-1", "buyer@example.com")
    return services


def _stripe_invoice() -> bytes:
    return json.dumps(
        {
            "id": "evt_1",
            "type": "invoice.payment_succeeded",
            "created": 1767225600,
            "data": {
                "object": {
                    "id": "in_1",
                    "amount_paid": 1900,
                    "currency": "usd",
                    "customer": "cus_1",
                    "parent": {
                        "subscription_details": {
                            "subscription": "sub_1",
                            "metadata": {"user_id": "acct-1", "plan": "pro"},
                        }
                    },
                    "lines": {"data": []},
                }
            },
        }
    ).encode()


class TestReceiveWebhook:
    def test_paymob_callback_applied(self, client: TestClient, signers):
        services = _wire(client)
        body = signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))

        response = client.post("/api/v1/webhooks/paymob", content=body)

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "applied"}
        rows = services["subscription_service"].repository.rows
        row = rows[("acct-1", Gateway.PAYMOB)]
        assert row.status is SubscriptionStatus.ACTIVE
        assert row.last_payment_amount == 29900

    def test_redelivery_is_acknowledged_as_duplicate(self, client: TestClient, signers):
        _wire(client)
        body = signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))

        client.post("/api/v1/webhooks/paymob", content=body)
        response = client.post("/api/v1/webhooks/paymob", content=body)

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate"

    def test_hmac_in_query_string(self, client: TestClient, signers):
        _wire(client)
        body = signers.paymob_body(signers.paymob_transaction())
        payload = json.loads(body)
        signature = payload.pop("hmac")

        response = client.post(
            "/api/v1/webhooks/paymob",
            content=json.dumps(payload).encode(),
            params={"hmac": signature},
        )

        assert response.status_code == 200

    def test_pending_notification_is_ignored(self, client: TestClient, signers):
        _wire(client)
        body = signers.paymob_body(signers.paymob_transaction(pending=True))

        response = client.post("/api/v1/webhooks/paymob", content=body)

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_tampered_payload_returns_400(self, client: TestClient, signers):
        services = _wire(client)
        payload = json.loads(signers.paymob_body(signers.paymob_transaction()))
        payload["obj"]["amount_cents"] = 1

        response = client.post("/api/v1/webhooks/paymob", content=json.dumps(payload).encode())

        assert response.status_code == 400
        assert services["subscription_service"].repository.rows == {}

    def test_unsigned_paytabs_with_numeric_hint(self, client: TestClient):
        _wire(client)
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

        response = client.post("/api/v1/webhooks/paytabs", content=body)

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"

    def test_wrongly_typed_field_returns_400(self, client: TestClient, signers):
        services = _wire(client)
        body = signers.paymob_body(signers.paymob_transaction(amount_cents="lots"))

        response = client.post("/api/v1/webhooks/paymob", content=body)

        assert response.status_code == 400
        assert services["subscription_service"].repository.rows == {}

    def test_stripe_signature_header(self, client: TestClient, signers):
        services = _wire(client)
        body = _stripe_invoice()

        response = client.post(
            "/api/v1/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": signers.stripe(body)},
        )

        assert response.status_code == 200
        row = services["subscription_service"].repository.rows[("acct-1", Gateway.STRIPE)]
        assert row.external_subscription_id == "sub_1"
        assert row.last_payment_currency == "USD"

    def test_stripe_bad_signature(self, client: TestClient):
        _wire(client)

        response = client.post(
            "/api/v1/webhooks/stripe",
            content=_stripe_invoice(),
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )

        assert response.status_code == 400

    def test_paddle_signature_header(self, client: TestClient, signers):
        _wire(client)
        body = json.dumps(
            {
                "event_id": "evt_01",
                "event_type": "transaction.completed",
                "data": {"id": "txn_01", "custom_data": {"userId": "acct-1"}},
            }
        ).encode()

        response = client.post(
            "/api/v1/webhooks/paddle",
            content=body,
            headers={"Paddle-Signature": signers.paddle(body)},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"

    def test_unknown_gateway_returns_404(self, client: TestClient):
        _wire(client)

        response = client.post("/api/v1/webhooks/paypal", content=b"{}")

        assert response.status_code == 404

    def test_unconfigured_gateway_returns_503(
        self, client: TestClient, signers, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setenv("PAYMOB__HMAC_SECRET", "")
        _wire(client, Settings())
        body = signers.paymob_body(signers.paymob_transaction())

        response = client.post("/api/v1/webhooks/paymob", content=body)

        assert response.status_code == 503

    def test_concurrent_update_returns_503(self, client: TestClient, signers):
        services = _wire(client)

        async def contended_apply(event):
            raise ConcurrentUpdateError("row kept changing")

        services["subscription_service"].apply = contended_apply
        body = signers.paymob_body(signers.paymob_transaction(transaction_id="TXN-1"))

        response = client.post("/api/v1/webhooks/paymob", content=body)

        assert response.status_code == 503
        # Claim released so the sender's redelivery can apply it
        ledger = services["webhook_ingestor"].ledger
        assert ledger.records == {}

    def test_ingestion_unavailable(self, client: TestClient):
        client.app.state.webhook_ingestor = None

        response = client.post("/api/v1/webhooks/paymob", content=b"{}")

        assert response.status_code == 503


class TestHostedPageReturn:
    def test_approved_return_redirects_to_success(self, client: TestClient):
        _wire(client)

        response = client.get(
            "/api/v1/webhooks/paytabs/return",
            params={"respStatus": "A", "tranRef": "TST1"},
            follow_redirects=False,
        )

        assert response.status_code == 303
        location = urlsplit(response.headers["location"])
        query = parse_qs(location.query)
        assert location.path == "/pricing"
        assert query["success"] == ["true"]
        assert query["gateway"] == ["paytabs"]
        assert query["transaction"] == ["TST1"]

    def test_declined_return_redirects_to_failure(self, client: TestClient):
        _wire(client)

        response = client.get(
            "/api/v1/webhooks/paytabs/return",
            params={"respStatus": "D", "tranRef": "TST2"},
            follow_redirects=False,
        )

        assert response.status_code == 303
        query = parse_qs(urlsplit(response.headers["location"]).query)
        assert query["error"] == ["payment_failed"]

    def test_return_never_mutates_state(self, client: TestClient):
        services = _wire(client)

        client.get(
            "/api/v1/webhooks/paddle/return",
            params={"_ptxn": "txn_01"},
            follow_redirects=False,
        )

        assert services["subscription_service"].repository.rows == {}

    def test_unknown_gateway_return(self, client: TestClient):
        _wire(client)

        response = client.get("/api/v1/webhooks/paypal/return", follow_redirects=False)

        assert response.status_code == 404
