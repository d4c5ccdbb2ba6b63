from harbor_billing.config import settings
from harbor_billing.errors import ValidationError
from harbor_billing.models.billing import ProcessorType
from harbor_billing.services.processors.base import (
    CustomerResult,
    PaymentMethodResult,
    PaymentProcessor,
    PaymentResult,
    PaymentStatus,
    RefundResult,
    SubscriptionPatch,
    SubscriptionResult,
    WebhookAction,
    WebhookEvent,
    WebhookResult,
    map_dispute_type,
    map_failure_reason,
    map_subscription_status,
    webhook_event,
)
from harbor_billing.services.processors.paypal import PayPalProcessor
from harbor_billing.services.processors.stripe import StripeProcessor

_processors: dict[str, PaymentProcessor] = {}


def get_payment_processor(name: str | ProcessorType | None = None) -> PaymentProcessor:
    """Return the processor for ``name`` (default: the configured one).

    Instances are cached per process so the PayPal access token is reused.
    """
    if isinstance(name, ProcessorType):
        key = name.value
    else:
        key = (name or settings.payment_processor).lower()
    if key not in _processors:
        if key == ProcessorType.stripe.value:
            _processors[key] = StripeProcessor()
        elif key == ProcessorType.paypal.value:
            _processors[key] = PayPalProcessor()
        else:
            raise ValidationError(f"Unsupported payment processor: {key}")
    return _processors[key]


def configured_processors() -> list[PaymentProcessor]:
    """Every processor with credentials, for the sweeps."""
    processors = [get_payment_processor(kind) for kind in ProcessorType]
    return [processor for processor in processors if processor.is_configured()]


__all__ = [
    "CustomerResult",
    "PayPalProcessor",
    "PaymentMethodResult",
    "PaymentProcessor",
    "PaymentResult",
    "PaymentStatus",
    "RefundResult",
    "StripeProcessor",
    "SubscriptionPatch",
    "SubscriptionResult",
    "WebhookAction",
    "WebhookEvent",
    "WebhookResult",
    "configured_processors",
    "get_payment_processor",
    "map_dispute_type",
    "map_failure_reason",
    "map_subscription_status",
    "webhook_event",
]
