"""Durable storage for canonical subscriptions."""

from datetime import datetime
from typing import Protocol

from paysync.models.billing import LIVE_STATUSES, Gateway, Subscription


class SubscriptionRepository(Protocol):
    """Storage contract for subscription rows.

    Every write is conditional: `insert` only succeeds for a new
    (account, gateway) pair and `compare_and_swap` only if the stored row
    still carries `expected_version`.
    """

    async def get(self, account_id: str, gateway: Gateway) -> Subscription | None:
        """Fetch the subscription for one (account, gateway) pair."""

    async def list_for_account(self, account_id: str) -> list[Subscription]:
        """Fetch every subscription row of an account."""

    async def insert(self, subscription: Subscription) -> Subscription | None:
        """Insert a new row. Returns None if the pair already exists."""

    async def compare_and_swap(
        self, subscription: Subscription, expected_version: int
    ) -> Subscription | None:
        """Replace the row if its version still equals `expected_version`.

        The stored version becomes `expected_version + 1`. Returns None on a
        version conflict or a missing row.
        """

    async def list_elapsed(self, now: datetime, limit: int) -> list[Subscription]:
        """Active / past_due rows whose period ended before `now`."""


class InMemorySubscriptionRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, Gateway], Subscription] = {}

    async def get(self, account_id: str, gateway: Gateway) -> Subscription | None:
        row = self.rows.get((account_id, gateway))
        return row.model_copy(deep=True) if row else None

    async def list_for_account(self, account_id: str) -> list[Subscription]:
        return [
            row.model_copy(deep=True)
            for (row_account, _), row in self.rows.items()
            if row_account == account_id
        ]

    async def insert(self, subscription: Subscription) -> Subscription | None:
        key = (subscription.account_id, subscription.gateway)
        if key in self.rows:
            return None
        stored = subscription.model_copy(deep=True, update={"version": 0})
        self.rows[key] = stored
        return stored.model_copy(deep=True)

    async def compare_and_swap(
        self, subscription: Subscription, expected_version: int
    ) -> Subscription | None:
        key = (subscription.account_id, subscription.gateway)
        current = self.rows.get(key)
        if current is None or current.version != expected_version:
            return None
        stored = subscription.model_copy(deep=True, update={"version": expected_version + 1})
        self.rows[key] = stored
        return stored.model_copy(deep=True)

    async def list_elapsed(self, now: datetime, limit: int) -> list[Subscription]:
        due = [
            row
            for row in self.rows.values()
            if row.status in LIVE_STATUSES and row.current_period_end < now
        ]
        due.sort(key=lambda row: row.current_period_end)
        return [row.model_copy(deep=True) for row in due[:limit]]


class SupabaseSubscriptionRepository:
    """Supabase-backed subscription repository."""

    def __init__(self, client, table: str):
        self.client = client
        self.table = table

    @staticmethod
    def _payload(subscription: Subscription) -> dict:
        return subscription.model_dump(mode="json")

    async def get(self, account_id: str, gateway: Gateway) -> Subscription | None:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("account_id", account_id)
            .eq("gateway", gateway.value)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return Subscription.model_validate(rows[0])

    async def list_for_account(self, account_id: str) -> list[Subscription]:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("account_id", account_id)
            .execute()
        )
        return [Subscription.model_validate(row) for row in response.data or []]

    async def insert(self, subscription: Subscription) -> Subscription | None:
        payload = self._payload(subscription.model_copy(update={"version": 0}))
        response = (
            await self.client.table(self.table)
            .upsert(payload, on_conflict="account_id,gateway", ignore_duplicates=True)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return Subscription.model_validate(rows[0])

    async def compare_and_swap(
        self, subscription: Subscription, expected_version: int
    ) -> Subscription | None:
        payload = self._payload(
            subscription.model_copy(update={"version": expected_version + 1})
        )
        response = (
            await self.client.table(self.table)
            .update(payload)
            .eq("account_id", subscription.account_id)
            .eq("gateway", subscription.gateway.value)
            .eq("version", expected_version)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return Subscription.model_validate(rows[0])

    async def list_elapsed(self, now: datetime, limit: int) -> list[Subscription]:
        response = (
            await self.client.table(self.table)
            .select("*")
            .in_("status", sorted(status.value for status in LIVE_STATUSES))
            .lt("current_period_end", now.isoformat())
            .order("current_period_end")
            .limit(limit)
            .execute()
        )
        return [Subscription.model_validate(row) for row in response.data or []]
