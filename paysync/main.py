"""
paysync - Main FastAPI Application.

Billing core of the document-conversion service: receives payment gateway
webhooks, keeps the canonical subscription state machine and the storage
quota ledger, and runs the expiration sweeper in the background.

Run with:
    uvicorn paysync.main:app --reload
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from paysync.api.v1.subscriptions import router as subscriptions_router
from paysync.api.v1.webhooks import router as webhooks_router
from paysync.config import Settings, get_settings
from paysync.constants import API_TITLE, API_VERSION
from paysync.gateways.paddle import PaddleGateway
from paysync.gateways.registry import build_adapters
from paysync.logging_config import setup_logging
from paysync.middleware import RequestContextMiddleware
from paysync.plans import load_plan_catalog
from paysync.services.accounts import InMemoryAccountResolver, SupabaseAccountResolver
from paysync.services.expiration_sweeper import ExpirationSweeper
from paysync.services.idempotency import InMemoryIdempotencyLedger, SupabaseIdempotencyLedger
from paysync.services.ingestion import WebhookIngestor
from paysync.services.quota_service import (
    InMemoryQuotaRepository,
    QuotaService,
    SupabaseQuotaRepository,
)
from paysync.services.subscription_repository import (
    InMemorySubscriptionRepository,
    SupabaseSubscriptionRepository,
)
from paysync.services.subscription_service import SubscriptionService

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


async def create_supabase_client(settings: Settings) -> AsyncSupabaseClient | None:
    """Create the async Supabase client, or None when not configured."""
    if not (settings.supabase_url and settings.supabase_secret_key):
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")
        return None
    try:
        client = await acreate_client(settings.supabase_url, settings.supabase_secret_key)
    except Exception as e:
        logger.warning("supabase_init_failed", error=str(e))
        return None
    logger.info("supabase_configured")
    return client


def build_services(settings: Settings, supabase_client: AsyncSupabaseClient | None) -> dict:
    """Wire adapters, repositories and services for the configured backend.

    Raises:
        RuntimeError: `storage_backend=supabase` without a Supabase client.
        ValueError: unknown plan table version.
    """
    plans = load_plan_catalog(settings.plans_version)
    adapters = build_adapters(settings)
    tables = settings.tables

    if settings.storage_backend == "supabase":
        if supabase_client is None:
            raise RuntimeError("storage_backend=supabase requires SUPABASE_URL and key")
        subscription_repository = SupabaseSubscriptionRepository(
            supabase_client, tables.subscriptions
        )
        ledger = SupabaseIdempotencyLedger(
            supabase_client,
            tables.webhook_events,
            lease_seconds=settings.processing_lease_seconds,
        )
        accounts = SupabaseAccountResolver(
            supabase_client, tables.accounts, tables.subscriptions
        )
        quota_repository = SupabaseQuotaRepository(
            supabase_client, tables.storage_quota, tables.adjust_storage_fn
        )
    else:
        subscription_repository = InMemorySubscriptionRepository()
        ledger = InMemoryIdempotencyLedger(lease_seconds=settings.processing_lease_seconds)
        accounts = InMemoryAccountResolver()
        quota_repository = InMemoryQuotaRepository()

    subscription_service = SubscriptionService(
        subscription_repository,
        adapters,
        remote_timeout_seconds=settings.remote_call_timeout_seconds,
        max_attempts=settings.max_apply_attempts,
    )
    return {
        "adapters": adapters,
        "plans": plans,
        "account_resolver": accounts,
        "subscription_service": subscription_service,
        "webhook_ingestor": WebhookIngestor(
            adapters, ledger, accounts, subscription_service
        ),
        "quota_service": QuotaService(quota_repository, subscription_service, plans),
        "sweeper": ExpirationSweeper(
            subscription_repository,
            subscription_service,
            interval_seconds=settings.sweeper.interval_seconds,
            batch_limit=settings.sweeper.batch_limit,
        ),
    }


async def close_services(services: dict) -> None:
    """Release outbound HTTP clients held by the gateway adapters."""
    for adapter in services["adapters"].values():
        if isinstance(adapter, PaddleGateway):
            await adapter.close()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info(
        "api_startup",
        cors_origins=settings.cors_origins,
        storage_backend=settings.storage_backend,
        plans_version=settings.plans_version,
    )

    supabase_client = await create_supabase_client(settings)
    _app.state.supabase = supabase_client
    _app.state.settings = settings

    services = build_services(settings, supabase_client)
    for name, service in services.items():
        setattr(_app.state, name, service)

    for gateway, adapter in services["adapters"].items():
        if adapter.configured:
            logger.info("gateway_configured", gateway=gateway.value)
        else:
            logger.warning("gateway_not_configured", gateway=gateway.value)

    stop_event = asyncio.Event()
    sweeper_task: asyncio.Task | None = None
    if settings.sweeper.enabled:
        sweeper_task = asyncio.create_task(services["sweeper"].run(stop_event))

    logger.info("services_initialized")

    yield

    stop_event.set()
    if sweeper_task is not None:
        sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper_task

    await close_services(services)
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Subscription lifecycle and multi-gateway payment reconciliation. "
        "Normalizes Stripe, PayTabs, Paymob and Paddle webhooks into one "
        "canonical subscription state machine and tracks storage quota."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(webhooks_router, prefix="/api/v1")
app.include_router(subscriptions_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Subscription lifecycle and payment reconciliation API",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
