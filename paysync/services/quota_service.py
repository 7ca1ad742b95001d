"""Storage quota ledger."""

import asyncio
from typing import Protocol

import structlog

from paysync.models.billing import PlanTier, StorageQuota, UploadDecision
from paysync.plans import PlanCatalog
from paysync.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


class QuotaRepository(Protocol):
    """Storage contract for per-account used bytes."""

    async def get_used(self, account_id: str) -> int:
        """Current used bytes (0 for unknown accounts)."""

    async def adjust(self, account_id: str, delta_bytes: int) -> tuple[int, bool]:
        """Atomically add `delta_bytes`, clamping at zero.

        Returns (new_used, clamped).
        """


class InMemoryQuotaRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.used: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def get_used(self, account_id: str) -> int:
        return self.used.get(account_id, 0)

    async def adjust(self, account_id: str, delta_bytes: int) -> tuple[int, bool]:
        async with self._lock:
            raw = self.used.get(account_id, 0) + delta_bytes
            new_used = max(0, raw)
            self.used[account_id] = new_used
            return new_used, raw < 0


class SupabaseQuotaRepository:
    """Supabase-backed repository; adjustment runs in a database function."""

    def __init__(self, client, table: str, adjust_fn: str):
        self.client = client
        self.table = table
        self.adjust_fn = adjust_fn

    async def get_used(self, account_id: str) -> int:
        response = (
            await self.client.table(self.table)
            .select("used")
            .eq("account_id", account_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return 0
        return int(rows[0]["used"])

    async def adjust(self, account_id: str, delta_bytes: int) -> tuple[int, bool]:
        response = await self.client.rpc(
            self.adjust_fn,
            {"p_account_id": account_id, "p_delta": delta_bytes},
        ).execute()
        rows = response.data or []
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            raise RuntimeError(f"{self.adjust_fn} returned no row for {account_id}")
        return int(rows[0]["used"]), bool(rows[0].get("clamped", False))


class QuotaService:
    """Tracks storage usage and answers entitlement questions.

    `adjust` never enforces limits; callers check `check_upload` first.
    """

    def __init__(
        self,
        repository: QuotaRepository,
        subscriptions: SubscriptionService,
        plans: PlanCatalog,
    ) -> None:
        self.repository = repository
        self.subscriptions = subscriptions
        self.plans = plans

    async def adjust(self, account_id: str, delta_bytes: int) -> int:
        new_used, clamped = await self.repository.adjust(account_id, delta_bytes)
        if clamped:
            logger.warning(
                "storage_quota_clamped",
                account_id=account_id,
                delta_bytes=delta_bytes,
            )
        return new_used

    def _quota(self, account_id: str, plan: PlanTier, used: int) -> StorageQuota:
        limit = self.plans.limits_for(plan).storage_bytes
        if limit is None:
            return StorageQuota(account_id=account_id, plan=plan, used=used)
        if limit == 0:
            percentage = 100.0 if used > 0 else 0.0
        else:
            percentage = min(100.0, used / limit * 100)
        return StorageQuota(
            account_id=account_id,
            plan=plan,
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            percentage=round(percentage, 2),
        )

    async def get_quota(self, account_id: str) -> StorageQuota:
        plan = await self.subscriptions.current_plan(account_id)
        used = await self.repository.get_used(account_id)
        return self._quota(account_id, plan, used)

    async def check_upload(self, account_id: str, file_size: int) -> UploadDecision:
        quota = await self.get_quota(account_id)
        limits = self.plans.limits_for(quota.plan)

        if quota.limit == 0:
            return UploadDecision(allowed=False, reason="storage_not_included", quota=quota)
        if file_size > limits.max_file_size:
            return UploadDecision(allowed=False, reason="file_too_large", quota=quota)
        if quota.remaining is not None and file_size > quota.remaining:
            return UploadDecision(allowed=False, reason="insufficient_storage", quota=quota)
        return UploadDecision(allowed=True, reason="allowed", quota=quota)
