"""Account resolution: maps payment event hints to a canonical account id."""

from typing import Protocol

import structlog

from paysync.models.billing import Gateway, PaymentEvent

logger = structlog.get_logger(__name__)


class AccountResolver(Protocol):
    """Lookup contract for the external account directory."""

    async def resolve(self, event: PaymentEvent) -> str | None:
        """Return the canonical account id for the event, or None."""


class InMemoryAccountResolver:
    """In-memory directory used for tests and local fallback."""

    def __init__(self) -> None:
        self.emails: dict[str, str] = {}
        self.account_ids: set[str] = set()
        self.customers: dict[tuple[Gateway, str], str] = {}

    def add_account(self, account_id: str, email: str | None = None) -> None:
        self.account_ids.add(account_id)
        if email:
            self.emails[email.strip().lower()] = account_id

    def link_customer(self, gateway: Gateway, customer_id: str, account_id: str) -> None:
        self.customers[(gateway, customer_id)] = account_id

    async def resolve(self, event: PaymentEvent) -> str | None:
        if event.account_id:
            return event.account_id
        if event.account_reference and event.account_reference in self.account_ids:
            return event.account_reference
        if event.customer_email:
            account_id = self.emails.get(event.customer_email.strip().lower())
            if account_id:
                return account_id
        if event.external_customer_id:
            return self.customers.get((event.gateway, event.external_customer_id))
        return None


class SupabaseAccountResolver:
    """Resolves accounts from the accounts table and known gateway customers."""

    def __init__(self, client, accounts_table: str, subscriptions_table: str):
        self.client = client
        self.accounts_table = accounts_table
        self.subscriptions_table = subscriptions_table

    async def _first(self, table: str, column: str, value: str, **filters: str) -> dict | None:
        query = self.client.table(table).select("*").eq(column, value)
        for key, filter_value in filters.items():
            query = query.eq(key, filter_value)
        response = await query.limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    async def resolve(self, event: PaymentEvent) -> str | None:
        if event.account_id:
            return event.account_id

        if event.account_reference:
            row = await self._first(self.accounts_table, "id", event.account_reference)
            if row:
                return str(row["id"])

        if event.customer_email:
            row = await self._first(
                self.accounts_table, "email", event.customer_email.strip().lower()
            )
            if row:
                return str(row["id"])

        if event.external_customer_id:
            row = await self._first(
                self.subscriptions_table,
                "external_customer_id",
                event.external_customer_id,
                gateway=event.gateway.value,
            )
            if row:
                return str(row["account_id"])

        logger.warning(
            "account_resolution_failed",
            gateway=event.gateway.value,
            transaction_id=event.external_transaction_id,
            has_reference=bool(event.account_reference),
            has_email=bool(event.customer_email),
            has_customer_id=bool(event.external_customer_id),
        )
        return None
