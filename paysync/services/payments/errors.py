"""Domain errors raised by the payments service and mapped to HTTP in `main`."""


class PaymentError(Exception):
    """Base class for local (non-gateway) payment failures."""


class ValidationError(PaymentError):
    """Order is not payable or the request is incomplete."""


class ForbiddenError(PaymentError):
    """Caller is not the payer of the order."""


class NotFoundError(PaymentError):
    """Unknown order, intent or external id."""


class ConflictError(PaymentError):
    """A concurrent request already holds the order's pending intent."""


class RateLimitedError(PaymentError):
    """Too many create calls for one payer."""


class MalformedWebhookError(ValidationError):
    """Webhook body is not JSON or carries no payment id."""


class WebhookAuthenticationError(PaymentError):
    """Webhook signature is missing or does not match."""
