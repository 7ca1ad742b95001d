"""Gateway webhook and hosted-page return endpoints."""

from typing import Literal
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from paysync.config import get_settings
from paysync.exceptions import ConcurrentUpdateError, GatewayNotConfiguredError
from paysync.gateways.base import GatewayAdapter
from paysync.gateways.registry import get_adapter
from paysync.services.ingestion import WebhookIngestor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Webhook acknowledgement."""

    received: bool
    outcome: Literal["applied", "duplicate", "ignored"]


def _get_ingestor(request: Request) -> WebhookIngestor:
    ingestor = getattr(request.app.state, "webhook_ingestor", None)
    if ingestor is None:
        raise HTTPException(status_code=503, detail="Webhook ingestion unavailable")
    return ingestor


def _get_adapter(ingestor: WebhookIngestor, gateway: str) -> GatewayAdapter:
    try:
        return get_adapter(ingestor.adapters, gateway)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _with_params(url: str, **params: str | None) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value)
    return urlunsplit(parts._replace(query=urlencode(query)))


@router.post("/{gateway}", response_model=WebhookResponse)
async def receive_webhook(gateway: str, request: Request) -> WebhookResponse:
    """Verify, normalize and apply one gateway notification."""
    ingestor = _get_ingestor(request)
    adapter = _get_adapter(ingestor, gateway)
    payload = await request.body()
    signature = adapter.extract_signature(request.headers, request.query_params, payload)
    logger.info(
        "webhook_received",
        gateway=adapter.name.value,
        content_length=len(payload),
        signed=bool(signature),
    )

    try:
        outcome = await ingestor.process(adapter.name, payload, signature)
    except (ConcurrentUpdateError, GatewayNotConfiguredError) as e:
        raise HTTPException(status_code=503, detail=str(e))

    if outcome.status == "rejected":
        logger.warning(
            "webhook_rejected",
            gateway=adapter.name.value,
            reason=outcome.reason,
        )
        raise HTTPException(status_code=400, detail=outcome.reason or "Webhook rejected")

    return WebhookResponse(received=True, outcome=outcome.status)


@router.get("/{gateway}/return")
async def hosted_page_return(gateway: str, request: Request) -> RedirectResponse:
    """Send the browser to the success or failure page. Never mutates state."""
    ingestor = _get_ingestor(request)
    adapter = _get_adapter(ingestor, gateway)
    settings = getattr(request.app.state, "settings", None) or get_settings()
    redirects = settings.redirects

    outcome = adapter.interpret_return(request.query_params)
    logger.info(
        "hosted_page_returned",
        gateway=adapter.name.value,
        approved=outcome.approved,
        reference=outcome.reference,
        signature_valid=outcome.signature_valid,
    )

    if outcome.approved:
        target = _with_params(
            redirects.success_url, gateway=adapter.name.value, transaction=outcome.reference
        )
    else:
        target = _with_params(
            redirects.failure_url, gateway=adapter.name.value, transaction=outcome.reference
        )
    return RedirectResponse(target, status_code=303)
