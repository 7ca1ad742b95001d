"""Authenticated subscription and storage-quota endpoints."""

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from paysync.auth import CurrentAccount
from paysync.exceptions import (
    ConcurrentUpdateError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from paysync.models.billing import (
    Gateway,
    PlanTier,
    StorageQuota,
    Subscription,
    SubscriptionActionResult,
    UploadDecision,
)
from paysync.services.quota_service import QuotaService
from paysync.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["subscriptions"])


class SubscriptionStatusResponse(BaseModel):
    """Current plan plus every subscription row of the account."""

    plan: PlanTier
    subscriptions: list[Subscription]


class CancelRequest(BaseModel):
    """Cancellation request."""

    immediate: bool = Field(default=False, description="Cancel now instead of at period end")
    gateway: Gateway | None = Field(default=None, description="Defaults to the active subscription")


class ResumeRequest(BaseModel):
    """Resume request."""

    gateway: Gateway | None = None


def _get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Subscription service unavailable")
    return service


def _get_quota_service(request: Request) -> QuotaService:
    service = getattr(request.app.state, "quota_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Quota service unavailable")
    return service


@router.get("/subscriptions", response_model=SubscriptionStatusResponse)
async def subscription_status(
    request: Request, account: CurrentAccount
) -> SubscriptionStatusResponse:
    """Return the account's current plan and subscriptions."""
    service = _get_subscription_service(request)
    return SubscriptionStatusResponse(
        plan=await service.current_plan(account.id),
        subscriptions=await service.get_subscriptions(account.id),
    )


@router.post("/subscriptions/cancel", response_model=SubscriptionActionResult)
async def cancel_subscription(
    body: CancelRequest,
    request: Request,
    account: CurrentAccount,
) -> SubscriptionActionResult:
    """Cancel now, or schedule cancellation at the end of the period."""
    service = _get_subscription_service(request)
    try:
        if body.immediate:
            result = await service.cancel_now(account.id, body.gateway)
        else:
            result = await service.cancel_at_period_end(account.id, body.gateway)
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SubscriptionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=503, detail=str(e))

    logger.info(
        "subscription_cancel_requested",
        account_id=account.id,
        gateway=result.subscription.gateway.value,
        immediate=body.immediate,
        remote_ok=result.remote.ok,
    )
    return result


@router.post("/subscriptions/resume", response_model=SubscriptionActionResult)
async def resume_subscription(
    body: ResumeRequest,
    request: Request,
    account: CurrentAccount,
) -> SubscriptionActionResult:
    """Undo a scheduled cancellation."""
    service = _get_subscription_service(request)
    try:
        return await service.resume(account.id, body.gateway)
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SubscriptionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/storage/quota", response_model=StorageQuota)
async def storage_quota(request: Request, account: CurrentAccount) -> StorageQuota:
    """Return storage usage against the current plan's limit."""
    service = _get_quota_service(request)
    return await service.get_quota(account.id)


@router.get("/storage/check", response_model=UploadDecision)
async def storage_check(
    request: Request,
    account: CurrentAccount,
    file_size: int = Query(ge=0, description="Size in bytes of the file to upload"),
) -> UploadDecision:
    """Pre-upload entitlement check."""
    service = _get_quota_service(request)
    return await service.check_upload(account.id, file_size)
