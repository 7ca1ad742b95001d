"""Expiration sweeper: closes out subscriptions whose period has elapsed.

This is the safety net for renewals that never produce a webhook. Each run
re-queries the elapsed rows, so a crash mid-sweep just leaves the remaining
rows for the next run, and a row renewed between query and write fails its
version check and is skipped.
"""

import asyncio
from datetime import UTC, datetime

import structlog

from paysync.models.billing import SubscriptionStatus, SweepReport
from paysync.services.subscription_repository import SubscriptionRepository
from paysync.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ExpirationSweeper:
    def __init__(
        self,
        repository: SubscriptionRepository,
        subscriptions: SubscriptionService,
        *,
        interval_seconds: int = 3600,
        batch_limit: int = 500,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.subscriptions = subscriptions
        self.interval_seconds = max(1, interval_seconds)
        self.batch_limit = max(1, batch_limit)
        self.now_provider = now_provider

    async def sweep_once(self, now: datetime | None = None) -> SweepReport:
        """Settle every elapsed live row, fetching `batch_limit` rows at a time.

        Stops on a short batch, or on a batch where every row was skipped so a
        row that keeps losing its version check cannot spin the loop.
        """
        now = now or self.now_provider()
        report = SweepReport()
        while True:
            due = await self.repository.list_elapsed(now, self.batch_limit)
            settled = 0
            for subscription in due:
                report.examined += 1
                stored = await self.subscriptions.settle_elapsed(subscription, now)
                if stored is None:
                    report.skipped += 1
                    logger.info(
                        "sweeper_row_skipped",
                        account_id=subscription.account_id,
                        gateway=subscription.gateway.value,
                        version=subscription.version,
                    )
                    continue
                settled += 1
                if stored.status is SubscriptionStatus.CANCELED:
                    report.canceled += 1
                else:
                    report.expired += 1
            if len(due) < self.batch_limit or not settled:
                break

        logger.info("sweeper_run_completed", **report.model_dump())
        return report

    async def run(self, stop_event: asyncio.Event) -> None:
        """Sweep every `interval_seconds` until `stop_event` is set."""
        logger.info("sweeper_started", interval_seconds=self.interval_seconds)
        while not stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception:
                # Storage outages must not kill the loop; next tick retries
                logger.exception("sweeper_run_failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue
        logger.info("sweeper_stopped")
