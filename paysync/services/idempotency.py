"""Idempotency ledger keyed by (gateway, external transaction id)."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog

from paysync.models.billing import (
    Gateway,
    IdempotencyRecord,
    IdempotencyStatus,
    PaymentEventKind,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IdempotencyLedger(Protocol):
    """Storage contract for webhook idempotency keys."""

    async def claim(
        self,
        gateway: Gateway,
        transaction_id: str,
        event_kind: PaymentEventKind | None = None,
    ) -> bool:
        """Record the key as `processing`.

        Returns True when the caller owns the key; False if it is already
        applied or claimed by a live (unexpired) processing lease.
        """

    async def mark_applied(self, gateway: Gateway, transaction_id: str) -> None:
        """Mark a claimed key as applied."""

    async def release(self, gateway: Gateway, transaction_id: str) -> None:
        """Drop a `processing` claim so a redelivery can re-apply."""

    async def get(self, gateway: Gateway, transaction_id: str) -> IdempotencyRecord | None:
        """Fetch the record for a key."""


class InMemoryIdempotencyLedger:
    """In-memory ledger used for tests and local fallback."""

    def __init__(self, lease_seconds: int = 300, now_provider=_utcnow) -> None:
        self.lease = timedelta(seconds=lease_seconds)
        self.now_provider = now_provider
        self.records: dict[tuple[Gateway, str], IdempotencyRecord] = {}
        self._lock = asyncio.Lock()

    def _is_live(self, record: IdempotencyRecord, now: datetime) -> bool:
        if record.status is IdempotencyStatus.APPLIED:
            return True
        return now - record.claimed_at < self.lease

    async def claim(
        self,
        gateway: Gateway,
        transaction_id: str,
        event_kind: PaymentEventKind | None = None,
    ) -> bool:
        async with self._lock:
            now = self.now_provider()
            key = (gateway, transaction_id)
            existing = self.records.get(key)
            if existing is not None and self._is_live(existing, now):
                return False
            if existing is not None:
                logger.warning(
                    "idempotency_lease_expired",
                    gateway=gateway.value,
                    transaction_id=transaction_id,
                    claimed_at=existing.claimed_at.isoformat(),
                )
            self.records[key] = IdempotencyRecord(
                gateway=gateway,
                external_transaction_id=transaction_id,
                event_kind=event_kind,
                claimed_at=now,
            )
            return True

    async def mark_applied(self, gateway: Gateway, transaction_id: str) -> None:
        async with self._lock:
            record = self.records.get((gateway, transaction_id))
            if record is None:
                return
            record.status = IdempotencyStatus.APPLIED
            record.applied_at = self.now_provider()

    async def release(self, gateway: Gateway, transaction_id: str) -> None:
        async with self._lock:
            record = self.records.get((gateway, transaction_id))
            if record is not None and record.status is IdempotencyStatus.PROCESSING:
                del self.records[(gateway, transaction_id)]

    async def get(self, gateway: Gateway, transaction_id: str) -> IdempotencyRecord | None:
        record = self.records.get((gateway, transaction_id))
        return record.model_copy(deep=True) if record else None


class SupabaseIdempotencyLedger:
    """Supabase-backed ledger.

    The (gateway, external_transaction_id) primary key makes the insert
    write-once: an upsert with `ignore_duplicates` returns no rows when the
    key already exists.
    """

    def __init__(self, client, table: str, lease_seconds: int = 300, now_provider=_utcnow):
        self.client = client
        self.table = table
        self.lease = timedelta(seconds=lease_seconds)
        self.now_provider = now_provider

    async def get(self, gateway: Gateway, transaction_id: str) -> IdempotencyRecord | None:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("gateway", gateway.value)
            .eq("external_transaction_id", transaction_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return IdempotencyRecord.model_validate(rows[0])

    async def claim(
        self,
        gateway: Gateway,
        transaction_id: str,
        event_kind: PaymentEventKind | None = None,
    ) -> bool:
        now = self.now_provider()
        payload = {
            "gateway": gateway.value,
            "external_transaction_id": transaction_id,
            "status": IdempotencyStatus.PROCESSING.value,
            "event_kind": event_kind.value if event_kind else None,
            "claimed_at": now.isoformat(),
        }
        response = (
            await self.client.table(self.table)
            .upsert(
                payload,
                on_conflict="gateway,external_transaction_id",
                ignore_duplicates=True,
            )
            .execute()
        )
        if response.data:
            return True

        # Key exists: take it over only if it is an abandoned processing claim
        stale_before = (now - self.lease).isoformat()
        takeover = (
            await self.client.table(self.table)
            .update({"claimed_at": now.isoformat(), "event_kind": payload["event_kind"]})
            .eq("gateway", gateway.value)
            .eq("external_transaction_id", transaction_id)
            .eq("status", IdempotencyStatus.PROCESSING.value)
            .lt("claimed_at", stale_before)
            .execute()
        )
        if takeover.data:
            logger.warning(
                "idempotency_lease_expired",
                gateway=gateway.value,
                transaction_id=transaction_id,
            )
            return True
        return False

    async def mark_applied(self, gateway: Gateway, transaction_id: str) -> None:
        await (
            self.client.table(self.table)
            .update(
                {
                    "status": IdempotencyStatus.APPLIED.value,
                    "applied_at": self.now_provider().isoformat(),
                }
            )
            .eq("gateway", gateway.value)
            .eq("external_transaction_id", transaction_id)
            .execute()
        )

    async def release(self, gateway: Gateway, transaction_id: str) -> None:
        await (
            self.client.table(self.table)
            .delete()
            .eq("gateway", gateway.value)
            .eq("external_transaction_id", transaction_id)
            .eq("status", IdempotencyStatus.PROCESSING.value)
            .execute()
        )
