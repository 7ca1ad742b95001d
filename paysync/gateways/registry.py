from paysync.config import Settings
from paysync.gateways.base import GatewayAdapter
from paysync.gateways.paddle import PaddleGateway
from paysync.gateways.paymob import PaymobGateway
from paysync.gateways.paytabs import PayTabsGateway
from paysync.gateways.signatures import SignatureVerifier
from paysync.gateways.stripe_gateway import StripeGateway
from paysync.models.billing import Gateway


def build_adapters(settings: Settings) -> dict[Gateway, GatewayAdapter]:
    """Instantiate one adapter per gateway from the immutable settings."""
    verifier = SignatureVerifier(settings.stripe.signature_tolerance_seconds)
    return {
        Gateway.STRIPE: StripeGateway(settings.stripe, verifier),
        Gateway.PAYTABS: PayTabsGateway(settings.paytabs, verifier),
        Gateway.PAYMOB: PaymobGateway(settings.paymob, verifier),
        Gateway.PADDLE: PaddleGateway(
            settings.paddle,
            verifier,
            timeout_seconds=settings.remote_call_timeout_seconds,
        ),
    }


def parse_gateway(name: str) -> Gateway:
    normalized = (name or "").strip().lower()
    try:
        return Gateway(normalized)
    except ValueError:
        raise ValueError(f"unsupported gateway: {name}") from None


def get_adapter(adapters: dict[Gateway, GatewayAdapter], name: str | Gateway) -> GatewayAdapter:
    gateway = name if isinstance(name, Gateway) else parse_gateway(name)
    adapter = adapters.get(gateway)
    if adapter is None:
        raise ValueError(f"unsupported gateway: {name}")
    return adapter
