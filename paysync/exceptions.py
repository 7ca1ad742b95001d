"""Domain exceptions raised by gateways and billing services."""


class ParseError(ValueError):
    """Webhook payload is malformed or not understood."""


class UnresolvableAccountError(ParseError):
    """The event could not be mapped to a canonical account."""


class IgnoredNotification(Exception):
    """A well-formed provider notification with no canonical meaning."""


class GatewayNotConfiguredError(RuntimeError):
    """The gateway has no credentials configured."""


class SubscriptionNotFoundError(LookupError):
    """No subscription matches the requested account / gateway."""


class SubscriptionStateError(ValueError):
    """The requested transition is not allowed from the current state."""


class ConcurrentUpdateError(RuntimeError):
    """The subscription row kept changing underneath a conditional update."""
