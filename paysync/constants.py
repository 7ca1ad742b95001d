"""
Business constants for the paysync billing core.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(secrets, timeouts, sweep interval), see config.py.
"""

from paysync.models.billing import PaymentEventKind

# --- API metadata ---
API_TITLE = "paysync API"
API_VERSION = "0.1.0"

# --- Stripe event types → canonical kind ---
STRIPE_EVENT_KINDS: dict[str, PaymentEventKind] = {
    "invoice.payment_succeeded": PaymentEventKind.CHARGE_SUCCEEDED,
    "invoice.paid": PaymentEventKind.CHARGE_SUCCEEDED,
    "invoice.payment_failed": PaymentEventKind.CHARGE_FAILED,
    "customer.subscription.deleted": PaymentEventKind.SUBSCRIPTION_CANCELED,
    "customer.subscription.paused": PaymentEventKind.SUBSCRIPTION_CANCELED,
}

# --- PayTabs payment_result.response_status → canonical kind ---
# H (hold) and P (pending) carry no final outcome yet.
PAYTABS_STATUS_KINDS: dict[str, PaymentEventKind] = {
    "A": PaymentEventKind.CHARGE_SUCCEEDED,
    "D": PaymentEventKind.CHARGE_FAILED,
    "E": PaymentEventKind.CHARGE_FAILED,
    "X": PaymentEventKind.CHARGE_FAILED,
    "V": PaymentEventKind.SUBSCRIPTION_CANCELED,
}
PAYTABS_PENDING_STATUSES: frozenset[str] = frozenset({"H", "P"})

# --- Paymob transaction callback HMAC field order ---
# Dotted paths into the transaction object, concatenated in this exact order.
PAYMOB_HMAC_FIELDS: tuple[str, ...] = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)

# --- Paddle event types → canonical kind ---
PADDLE_EVENT_KINDS: dict[str, PaymentEventKind] = {
    "transaction.completed": PaymentEventKind.CHARGE_SUCCEEDED,
    "transaction.payment_failed": PaymentEventKind.CHARGE_FAILED,
    "subscription.canceled": PaymentEventKind.SUBSCRIPTION_CANCELED,
    "subscription.paused": PaymentEventKind.SUBSCRIPTION_CANCELED,
}
