"""Payment processor capability shared by every processor integration."""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from harbor_billing.errors import ValidationError
from harbor_billing.models.billing import (
    BillingAccountStatus,
    DisputeType,
    PaymentFailureReason,
    ProcessorType,
)


class WebhookAction(str, enum.Enum):
    payment_succeeded = "payment_succeeded"
    payment_failed = "payment_failed"
    invoice_payment_succeeded = "invoice_payment_succeeded"
    invoice_payment_failed = "invoice_payment_failed"
    subscription_created = "subscription_created"
    subscription_updated = "subscription_updated"
    subscription_deleted = "subscription_deleted"
    dispute_created = "dispute_created"
    unknown = "unknown"


class PaymentStatus(str, enum.Enum):
    succeeded = "succeeded"
    pending = "pending"
    failed = "failed"


@dataclass(frozen=True)
class CustomerResult:
    customer_id: str


@dataclass(frozen=True)
class PaymentMethodResult:
    payment_method_id: str


@dataclass(frozen=True)
class SubscriptionResult:
    subscription_id: str
    status: str
    trial_end: datetime | None = None


@dataclass(frozen=True)
class SubscriptionPatch:
    price_ref: str | None = None
    cancel_at_period_end: bool | None = None
    metadata: dict[str, str] | None = None


@dataclass(frozen=True)
class PaymentResult:
    transaction_id: str
    status: PaymentStatus
    failure_code: str | None = None
    failure_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.succeeded


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class WebhookResult:
    handled: bool
    action: WebhookAction = WebhookAction.unknown
    data: dict[str, Any] = field(default_factory=dict)


class PaymentProcessor(ABC):
    processor_type: ProcessorType

    def is_configured(self) -> bool:
        return True

    @abstractmethod
    def create_customer(
        self, email: str, name: str | None, metadata: dict[str, str] | None = None
    ) -> CustomerResult: ...

    @abstractmethod
    def create_payment_method(
        self, customer_id: str, details: dict[str, Any]
    ) -> PaymentMethodResult: ...

    @abstractmethod
    def create_subscription(
        self,
        customer_id: str,
        price_ref: str,
        payment_method_id: str | None,
        metadata: dict[str, str] | None = None,
        trial_days: int | None = None,
    ) -> SubscriptionResult: ...

    @abstractmethod
    def update_subscription(self, subscription_id: str, patch: SubscriptionPatch) -> None: ...

    @abstractmethod
    def cancel_subscription(self, subscription_id: str) -> None: ...

    @abstractmethod
    def process_payment(
        self,
        amount: Decimal,
        currency: str,
        payment_method_id: str | None,
        metadata: dict[str, str] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> PaymentResult: ...

    @abstractmethod
    def process_refund(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        currency: str = "USD",
    ) -> RefundResult: ...

    @abstractmethod
    def construct_webhook_event(self, raw_body: bytes, signature: str) -> WebhookEvent:
        """Verify and parse a delivery. Raises SignatureError when it is not authentic."""

    @abstractmethod
    def handle_webhook_event(self, event: WebhookEvent) -> WebhookResult:
        """Normalize a verified event into a WebhookAction plus plain data."""


# ── Normalization tables ─────────────────────────────────

_FAILURE_REASONS: dict[str, PaymentFailureReason] = {
    "insufficient_funds": PaymentFailureReason.insufficient_funds,
    "insufficient_balance": PaymentFailureReason.insufficient_funds,
    "card_declined": PaymentFailureReason.card_declined,
    "generic_decline": PaymentFailureReason.card_declined,
    "do_not_honor": PaymentFailureReason.card_declined,
    "instrument_declined": PaymentFailureReason.card_declined,
    "expired_card": PaymentFailureReason.expired_card,
    "card_expired": PaymentFailureReason.expired_card,
    "invalid_card": PaymentFailureReason.invalid_card,
    "invalid_number": PaymentFailureReason.invalid_card,
    "incorrect_number": PaymentFailureReason.invalid_card,
    "fraudulent": PaymentFailureReason.fraud_suspected,
    "suspected_fraud": PaymentFailureReason.fraud_suspected,
    "stolen_card": PaymentFailureReason.fraud_suspected,
    "authentication_required": PaymentFailureReason.authentication_required,
    "payer_action_required": PaymentFailureReason.authentication_required,
    "processing_error": PaymentFailureReason.processing_error,
    "network_error": PaymentFailureReason.network_error,
}

_SUBSCRIPTION_STATUSES: dict[str, BillingAccountStatus] = {
    "active": BillingAccountStatus.active,
    "trialing": BillingAccountStatus.trialing,
    "past_due": BillingAccountStatus.past_due,
    "unpaid": BillingAccountStatus.past_due,
    "suspended": BillingAccountStatus.past_due,
    "canceled": BillingAccountStatus.canceled,
    "cancelled": BillingAccountStatus.canceled,
    "expired": BillingAccountStatus.canceled,
    "incomplete_expired": BillingAccountStatus.canceled,
    "incomplete": BillingAccountStatus.incomplete,
    "approval_pending": BillingAccountStatus.incomplete,
    "approved": BillingAccountStatus.incomplete,
}

_DISPUTE_TYPES: dict[str, DisputeType] = {
    "fraudulent": DisputeType.fraud,
    "unauthorised": DisputeType.fraud,
    "subscription_canceled": DisputeType.chargeback,
    "product_unacceptable": DisputeType.chargeback,
    "product_not_received": DisputeType.chargeback,
    "merchandise_or_service_not_received": DisputeType.chargeback,
    "merchandise_or_service_not_as_described": DisputeType.chargeback,
    "duplicate": DisputeType.processing_error,
    "duplicate_transaction": DisputeType.processing_error,
    "credit_not_processed": DisputeType.processing_error,
    "incorrect_amount": DisputeType.processing_error,
    "authorization": DisputeType.authorization,
}


def map_failure_reason(code: str | None) -> PaymentFailureReason:
    if not code:
        return PaymentFailureReason.unknown
    return _FAILURE_REASONS.get(code.lower(), PaymentFailureReason.unknown)


def map_subscription_status(status: str | None) -> BillingAccountStatus | None:
    """Processor subscription status to a local account status, None when unknown."""
    if not status:
        return None
    return _SUBSCRIPTION_STATUSES.get(status.lower())


def map_dispute_type(reason: str | None) -> DisputeType:
    if not reason:
        return DisputeType.inquiry
    return _DISPUTE_TYPES.get(reason.lower(), DisputeType.inquiry)


def webhook_event(payload: Any, type_key: str) -> WebhookEvent:
    """Wrap a decoded webhook body, rejecting bodies without an id or type."""
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object", code="INVALID_WEBHOOK")
    event_id = payload.get("id")
    event_type = payload.get(type_key)
    if not event_id or not isinstance(event_type, str) or not event_type:
        raise ValidationError(f"Webhook body needs id and {type_key}", code="INVALID_WEBHOOK")
    return WebhookEvent(id=str(event_id), type=event_type, payload=payload)


def event_object(payload: dict[str, Any], *path: str) -> dict[str, Any]:
    """The nested object at ``path``, or an empty dict when the shape is off."""
    node: Any = payload
    for key in path:
        node = node.get(key) if isinstance(node, dict) else None
    return node if isinstance(node, dict) else {}


def require_field(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if not value:
        raise ValidationError(f"Webhook object is missing {key}", code="INVALID_WEBHOOK")
    return str(value)
