"""Canonical subscription state machine."""

import asyncio
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import AsyncIterator, Awaitable, Callable, Hashable

import structlog

from paysync.exceptions import (
    ConcurrentUpdateError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from paysync.gateways.base import GatewayAdapter
from paysync.models.billing import (
    BillingCycle,
    Gateway,
    PaymentEvent,
    PaymentEventKind,
    PlanTier,
    RemoteCancelResult,
    Subscription,
    SubscriptionActionResult,
    SubscriptionStatus,
    period_bounds,
)
from paysync.services.subscription_repository import SubscriptionRepository

logger = structlog.get_logger(__name__)

Transition = Callable[[Subscription, datetime], Subscription | None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class KeyedLocks:
    """Per-key asyncio locks, dropped once no task holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class SubscriptionService:
    """Applies payment events and account actions to subscription rows.

    Every write is a compare-and-swap on the row version; on conflict the row
    is re-read and the transition re-evaluated, up to `max_attempts` times.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        adapters: dict[Gateway, GatewayAdapter] | None = None,
        *,
        remote_timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.adapters = adapters or {}
        self.remote_timeout_seconds = remote_timeout_seconds
        self.max_attempts = max_attempts
        self.now_provider = now_provider
        self._locks = KeyedLocks()

    # -- webhook-driven transitions -------------------------------------

    def _activate(
        self, subscription: Subscription, event: PaymentEvent, now: datetime
    ) -> Subscription:
        cycle = event.billing_cycle or subscription.billing_cycle
        start, end = period_bounds(now, cycle)
        return subscription.model_copy(
            update={
                "plan": event.plan or subscription.plan,
                "billing_cycle": cycle,
                "status": SubscriptionStatus.ACTIVE,
                "current_period_start": start,
                "current_period_end": end,
                "cancel_at_period_end": False,
                "canceled_at": None,
                "external_transaction_id": event.external_transaction_id,
                "external_customer_id": event.external_customer_id
                or subscription.external_customer_id,
                "external_subscription_id": event.external_subscription_id
                or subscription.external_subscription_id,
                "last_payment_amount": event.amount,
                "last_payment_currency": event.currency,
                "last_payment_at": event.occurred_at or now,
                "updated_at": now,
            }
        )

    def _transition(
        self, subscription: Subscription, event: PaymentEvent, now: datetime
    ) -> Subscription | None:
        """Return the row after applying `event`, or None for a no-op."""
        status = subscription.status

        if event.kind is PaymentEventKind.CHARGE_SUCCEEDED:
            if (
                status is not SubscriptionStatus.PENDING
                and subscription.external_transaction_id == event.external_transaction_id
            ):
                return None
            return self._activate(subscription, event, now)

        if event.kind is PaymentEventKind.CHARGE_FAILED:
            if not subscription.is_live:
                return None
            if status is SubscriptionStatus.PAST_DUE:
                return None
            return subscription.model_copy(
                update={"status": SubscriptionStatus.PAST_DUE, "updated_at": now}
            )

        if event.kind is PaymentEventKind.SUBSCRIPTION_CANCELED:
            if subscription.is_terminal:
                return None
            return subscription.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELED,
                    "canceled_at": now,
                    "updated_at": now,
                }
            )

        return None

    def _new_pending(self, event: PaymentEvent, now: datetime) -> Subscription:
        cycle = event.billing_cycle or BillingCycle.MONTHLY
        start, end = period_bounds(now, cycle)
        return Subscription(
            account_id=event.account_id,
            gateway=event.gateway,
            plan=event.plan or PlanTier.PRO,
            billing_cycle=cycle,
            status=SubscriptionStatus.PENDING,
            current_period_start=start,
            current_period_end=end,
            external_transaction_id=event.external_transaction_id,
            external_customer_id=event.external_customer_id,
            external_subscription_id=event.external_subscription_id,
            created_at=now,
            updated_at=now,
        )

    async def apply(self, event: PaymentEvent) -> Subscription | None:
        """Apply a resolved payment event.

        Returns the stored row after the event, or None when the event
        refers to a subscription that does not exist and cannot create one.

        Raises:
            ValueError: the event has no resolved account.
            ConcurrentUpdateError: the row kept changing underneath us.
        """
        if not event.account_id:
            raise ValueError("Payment event has no resolved account")

        key = (event.account_id, event.gateway)
        async with self._locks.hold(key):
            for attempt in range(1, self.max_attempts + 1):
                now = self.now_provider()
                current = await self.repository.get(event.account_id, event.gateway)

                if current is None:
                    if event.kind is not PaymentEventKind.CHARGE_SUCCEEDED:
                        logger.info(
                            "subscription_event_without_row",
                            account_id=event.account_id,
                            gateway=event.gateway.value,
                            kind=event.kind.value,
                            transaction_id=event.external_transaction_id,
                        )
                        return None
                    current = await self.repository.insert(self._new_pending(event, now))
                    if current is None:
                        continue

                target = self._transition(current, event, now)
                if target is None:
                    logger.info(
                        "subscription_event_noop",
                        account_id=event.account_id,
                        gateway=event.gateway.value,
                        kind=event.kind.value,
                        status=current.status.value,
                        transaction_id=event.external_transaction_id,
                    )
                    return current

                stored = await self.repository.compare_and_swap(target, current.version)
                if stored is not None:
                    logger.info(
                        "subscription_transition",
                        account_id=event.account_id,
                        gateway=event.gateway.value,
                        kind=event.kind.value,
                        from_status=current.status.value,
                        to_status=stored.status.value,
                        plan=stored.plan.value,
                        transaction_id=event.external_transaction_id,
                        version=stored.version,
                    )
                    return stored

                logger.info(
                    "subscription_cas_conflict",
                    account_id=event.account_id,
                    gateway=event.gateway.value,
                    attempt=attempt,
                )

        raise ConcurrentUpdateError(
            f"Subscription {event.account_id}/{event.gateway.value} changed concurrently"
        )

    # -- account actions ------------------------------------------------

    async def get_subscriptions(self, account_id: str) -> list[Subscription]:
        return await self.repository.list_for_account(account_id)

    async def current_plan(self, account_id: str, now: datetime | None = None) -> PlanTier:
        """Highest tier among live subscriptions whose period has not elapsed."""
        now = now or self.now_provider()
        entitled = [
            row.plan
            for row in await self.repository.list_for_account(account_id)
            if row.is_live and not row.period_elapsed(now)
        ]
        if not entitled:
            return PlanTier.FREE
        return max(entitled, key=lambda plan: plan.rank)

    async def _select(self, account_id: str, gateway: Gateway | None) -> Subscription:
        if gateway is not None:
            row = await self.repository.get(account_id, gateway)
            if row is None:
                raise SubscriptionNotFoundError(
                    f"No {gateway.value} subscription for account {account_id}"
                )
            return row

        rows = await self.repository.list_for_account(account_id)
        if not rows:
            raise SubscriptionNotFoundError(f"No subscription for account {account_id}")
        candidates = [row for row in rows if not row.is_terminal]
        if not candidates:
            raise SubscriptionStateError("Account has no active subscription")
        return max(candidates, key=lambda row: (row.plan.rank, row.current_period_end))

    async def _mutate(
        self, account_id: str, gateway: Gateway, transition: Transition
    ) -> Subscription:
        async with self._locks.hold((account_id, gateway)):
            for attempt in range(1, self.max_attempts + 1):
                current = await self.repository.get(account_id, gateway)
                if current is None:
                    raise SubscriptionNotFoundError(
                        f"No {gateway.value} subscription for account {account_id}"
                    )
                target = transition(current, self.now_provider())
                if target is None:
                    return current
                stored = await self.repository.compare_and_swap(target, current.version)
                if stored is not None:
                    logger.info(
                        "subscription_transition",
                        account_id=account_id,
                        gateway=gateway.value,
                        from_status=current.status.value,
                        to_status=stored.status.value,
                        cancel_at_period_end=stored.cancel_at_period_end,
                        version=stored.version,
                    )
                    return stored
                logger.info(
                    "subscription_cas_conflict",
                    account_id=account_id,
                    gateway=gateway.value,
                    attempt=attempt,
                )
        raise ConcurrentUpdateError(
            f"Subscription {account_id}/{gateway.value} changed concurrently"
        )

    async def _call_remote(
        self,
        subscription: Subscription,
        operation: str,
        call: Callable[[GatewayAdapter], Awaitable[RemoteCancelResult]],
    ) -> RemoteCancelResult:
        adapter = self.adapters.get(subscription.gateway)
        if adapter is None:
            result = RemoteCancelResult(
                ok=False, performed=False, detail="Gateway adapter not available"
            )
        else:
            try:
                result = await asyncio.wait_for(call(adapter), self.remote_timeout_seconds)
            except TimeoutError:
                result = RemoteCancelResult(
                    ok=False,
                    detail=f"Timed out after {self.remote_timeout_seconds}s",
                )
            except Exception as e:
                result = RemoteCancelResult(ok=False, detail=str(e))

        if not result.ok:
            logger.warning(
                "remote_cancel_failed",
                operation=operation,
                account_id=subscription.account_id,
                gateway=subscription.gateway.value,
                reference=subscription.remote_reference,
                detail=result.detail,
            )
        return result

    async def cancel_now(
        self, account_id: str, gateway: Gateway | None = None
    ) -> SubscriptionActionResult:
        """Cancel immediately, locally first, then at the gateway."""
        selected = await self._select(account_id, gateway)

        def transition(row: Subscription, now: datetime) -> Subscription | None:
            if row.is_terminal:
                raise SubscriptionStateError(
                    f"Cannot cancel a {row.status.value} subscription"
                )
            return row.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELED,
                    "canceled_at": now,
                    "cancel_at_period_end": False,
                    "updated_at": now,
                }
            )

        stored = await self._mutate(account_id, selected.gateway, transition)
        remote = await self._call_remote(
            stored,
            "cancel_now",
            lambda adapter: adapter.cancel_remote(stored.remote_reference, at_period_end=False),
        )
        return SubscriptionActionResult(subscription=stored, remote=remote)

    async def cancel_at_period_end(
        self, account_id: str, gateway: Gateway | None = None
    ) -> SubscriptionActionResult:
        """Keep entitlements until period end; the sweeper cancels afterwards."""
        selected = await self._select(account_id, gateway)

        def transition(row: Subscription, now: datetime) -> Subscription | None:
            if not row.is_live:
                raise SubscriptionStateError(
                    f"Cannot schedule cancellation of a {row.status.value} subscription"
                )
            if row.cancel_at_period_end:
                return None
            return row.model_copy(update={"cancel_at_period_end": True, "updated_at": now})

        stored = await self._mutate(account_id, selected.gateway, transition)
        remote = await self._call_remote(
            stored,
            "cancel_at_period_end",
            lambda adapter: adapter.cancel_remote(stored.remote_reference, at_period_end=True),
        )
        return SubscriptionActionResult(subscription=stored, remote=remote)

    async def resume(
        self, account_id: str, gateway: Gateway | None = None
    ) -> SubscriptionActionResult:
        """Undo a scheduled cancellation while the period is still running."""
        selected = await self._select(account_id, gateway)

        def transition(row: Subscription, now: datetime) -> Subscription | None:
            if not row.is_live or row.period_elapsed(now):
                raise SubscriptionStateError(
                    f"Cannot resume a {row.status.value} subscription"
                )
            if not row.cancel_at_period_end:
                return None
            return row.model_copy(update={"cancel_at_period_end": False, "updated_at": now})

        stored = await self._mutate(account_id, selected.gateway, transition)
        remote = await self._call_remote(
            stored,
            "resume",
            lambda adapter: adapter.resume_remote(stored.remote_reference),
        )
        return SubscriptionActionResult(subscription=stored, remote=remote)

    # -- sweeper --------------------------------------------------------

    async def settle_elapsed(
        self, subscription: Subscription, now: datetime
    ) -> Subscription | None:
        """Close out one elapsed row: `canceled` if flagged, else `expired`.

        Single conditional write against the version the sweeper read. Returns
        None when the row changed meanwhile (e.g. renewed) or no longer
        qualifies.
        """
        if not subscription.is_live or not subscription.period_elapsed(now):
            return None

        if subscription.cancel_at_period_end:
            target = subscription.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELED,
                    "canceled_at": now,
                    "updated_at": now,
                }
            )
        else:
            target = subscription.model_copy(
                update={"status": SubscriptionStatus.EXPIRED, "updated_at": now}
            )

        async with self._locks.hold((subscription.account_id, subscription.gateway)):
            stored = await self.repository.compare_and_swap(target, subscription.version)

        if stored is not None:
            logger.info(
                "subscription_transition",
                account_id=subscription.account_id,
                gateway=subscription.gateway.value,
                from_status=subscription.status.value,
                to_status=stored.status.value,
                reason="period_elapsed",
                version=stored.version,
            )
        return stored
