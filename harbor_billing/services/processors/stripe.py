"""Stripe REST integration."""

import hashlib
import hmac
import json
import logging
import time
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import httpx

from harbor_billing.config import settings
from harbor_billing.errors import ProcessorError, SignatureError
from harbor_billing.metrics import PROCESSOR_LATENCY
from harbor_billing.models.billing import ProcessorType
from harbor_billing.services.common import to_money
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
    event_object,
    map_dispute_type,
    map_subscription_status,
    require_field,
    webhook_event,
)

logger = logging.getLogger(__name__)

_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def _flatten(params: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Encode nested params the way Stripe expects form bodies (a[b][0]=c)."""
    flat: dict[str, str] = {}
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    flat.update(_flatten(item, f"{name}[{index}]"))
                else:
                    flat[f"{name}[{index}]"] = str(item)
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


def _to_cents(amount: Decimal) -> int:
    return int(to_money(amount) * 100)


def _from_cents(value: int | None) -> Decimal:
    return to_money(Decimal(value or 0) / 100)


def _from_timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


class StripeProcessor(PaymentProcessor):
    """Thin wrapper around the Stripe REST API."""

    processor_type = ProcessorType.stripe

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._secret_key = settings.stripe_secret_key if secret_key is None else secret_key
        self._webhook_secret = (
            settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        self._api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self._timeout = timeout or settings.processor_timeout_seconds

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: dict[str, Any] | None = None,
        *,
        allow_card_error: bool = False,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        if not self.is_configured():
            raise ProcessorError("Stripe is not configured")
        data = _flatten(params or {})
        try:
            with PROCESSOR_LATENCY.labels("stripe", operation).time():
                with httpx.Client(timeout=self._timeout) as client:
                    if method == "GET":
                        resp = client.get(
                            f"{self._api_base}{path}", params=data, headers=self._headers()
                        )
                    else:
                        resp = client.request(
                            method,
                            f"{self._api_base}{path}",
                            data=data,
                            headers=self._headers(idempotency_key),
                        )
        except httpx.HTTPError as exc:
            logger.error("Stripe %s transport error: %s", operation, exc)
            raise ProcessorError(f"Stripe {operation} failed: {exc}") from exc
        try:
            body: dict[str, Any] = resp.json()
        except ValueError as exc:
            raise ProcessorError(f"Stripe {operation} returned invalid JSON") from exc
        if resp.status_code >= 400:
            error = body.get("error") or {}
            if allow_card_error and error.get("type") == "card_error":
                return body
            logger.error("Stripe %s failed: %s", operation, error.get("message"))
            raise ProcessorError(
                error.get("message") or f"Stripe {operation} failed",
                details={"processor_code": error.get("code")},
            )
        return body

    # ── Customers & payment methods ──────────────────────

    def create_customer(
        self, email: str, name: str | None, metadata: dict[str, str] | None = None
    ) -> CustomerResult:
        body = self._request(
            "POST",
            "/customers",
            "create_customer",
            {"email": email, "name": name, "metadata": {"source": "harborlist", **(metadata or {})}},
        )
        logger.info("Created Stripe customer: %s", body["id"])
        return CustomerResult(customer_id=body["id"])

    def create_payment_method(
        self, customer_id: str, details: dict[str, Any]
    ) -> PaymentMethodResult:
        payment_method_id = details.get("payment_method_id")
        if not payment_method_id:
            token = details.get("token")
            if not token:
                raise ProcessorError(
                    "A payment_method_id or card token is required", status_code=400
                )
            created = self._request(
                "POST",
                "/payment_methods",
                "create_payment_method",
                {"type": details.get("type", "card"), "card": {"token": token}},
            )
            payment_method_id = created["id"]
        self._request(
            "POST",
            f"/payment_methods/{payment_method_id}/attach",
            "attach_payment_method",
            {"customer": customer_id},
        )
        self._request(
            "POST",
            f"/customers/{customer_id}",
            "set_default_payment_method",
            {"invoice_settings": {"default_payment_method": payment_method_id}},
        )
        return PaymentMethodResult(payment_method_id=payment_method_id)

    # ── Subscriptions ────────────────────────────────────

    def create_subscription(
        self,
        customer_id: str,
        price_ref: str,
        payment_method_id: str | None,
        metadata: dict[str, str] | None = None,
        trial_days: int | None = None,
    ) -> SubscriptionResult:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_ref}],
            "default_payment_method": payment_method_id,
            "metadata": {"source": "harborlist", **(metadata or {})},
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        body = self._request("POST", "/subscriptions", "create_subscription", params)
        logger.info("Created Stripe subscription: %s", body["id"])
        return SubscriptionResult(
            subscription_id=body["id"],
            status=body.get("status", "incomplete"),
            trial_end=_from_timestamp(body.get("trial_end")),
        )

    def update_subscription(self, subscription_id: str, patch: SubscriptionPatch) -> None:
        params: dict[str, Any] = {}
        if patch.price_ref:
            current = self._request(
                "GET", f"/subscriptions/{subscription_id}", "retrieve_subscription"
            )
            item_id = current["items"]["data"][0]["id"]
            params["items"] = [{"id": item_id, "price": patch.price_ref}]
            # proration is charged locally
            params["proration_behavior"] = "none"
        if patch.cancel_at_period_end is not None:
            params["cancel_at_period_end"] = patch.cancel_at_period_end
        if patch.metadata:
            params["metadata"] = patch.metadata
        if not params:
            return
        self._request(
            "POST", f"/subscriptions/{subscription_id}", "update_subscription", params
        )

    def cancel_subscription(self, subscription_id: str) -> None:
        self._request("DELETE", f"/subscriptions/{subscription_id}", "cancel_subscription")
        logger.info("Canceled Stripe subscription: %s", subscription_id)

    # ── Charges & refunds ────────────────────────────────

    def process_payment(
        self,
        amount: Decimal,
        currency: str,
        payment_method_id: str | None,
        metadata: dict[str, str] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        body = self._request(
            "POST",
            "/payment_intents",
            "process_payment",
            {
                "amount": _to_cents(amount),
                "currency": currency.lower(),
                "payment_method": payment_method_id,
                "customer": (metadata or {}).get("customer_id"),
                "confirm": True,
                "off_session": True,
                "metadata": {"source": "harborlist", **(metadata or {})},
            },
            allow_card_error=True,
            idempotency_key=idempotency_key,
        )
        error = body.get("error")
        if error:
            intent = error.get("payment_intent") or {}
            return PaymentResult(
                transaction_id=intent.get("id", ""),
                status=PaymentStatus.failed,
                failure_code=error.get("decline_code") or error.get("code"),
                failure_message=error.get("message"),
            )
        status = body.get("status")
        if status == "succeeded":
            return PaymentResult(transaction_id=body["id"], status=PaymentStatus.succeeded)
        if status in ("requires_payment_method", "canceled"):
            last_error = body.get("last_payment_error") or {}
            return PaymentResult(
                transaction_id=body["id"],
                status=PaymentStatus.failed,
                failure_code=last_error.get("decline_code") or last_error.get("code"),
                failure_message=last_error.get("message"),
            )
        return PaymentResult(transaction_id=body["id"], status=PaymentStatus.pending)

    def process_refund(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        currency: str = "USD",
    ) -> RefundResult:
        params: dict[str, Any] = {
            "payment_intent": transaction_id,
            "reason": reason if reason in _REFUND_REASONS else "requested_by_customer",
        }
        if amount is not None:
            params["amount"] = _to_cents(amount)
        if reason and reason not in _REFUND_REASONS:
            params["metadata"] = {"reason": reason}
        body = self._request("POST", "/refunds", "process_refund", params)
        logger.info("Created Stripe refund %s for %s", body["id"], transaction_id)
        return RefundResult(refund_id=body["id"], status=body.get("status") or "pending")

    # ── Webhooks ─────────────────────────────────────────

    def construct_webhook_event(self, raw_body: bytes, signature: str) -> WebhookEvent:
        if not self._webhook_secret:
            raise SignatureError("Stripe webhook secret is not configured")
        timestamp = None
        candidates: list[str] = []
        for part in (signature or "").split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                candidates.append(value)
        if not timestamp or not candidates:
            raise SignatureError("Malformed Stripe-Signature header")
        try:
            signed_at = int(timestamp)
        except ValueError as exc:
            raise SignatureError("Malformed Stripe-Signature timestamp") from exc
        if abs(time.time() - signed_at) > settings.stripe_webhook_tolerance_seconds:
            raise SignatureError("Stripe webhook timestamp outside tolerance")
        signed_payload = timestamp.encode("utf-8") + b"." + raw_body
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"), signed_payload, hashlib.sha256
        ).hexdigest()
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            raise SignatureError("Invalid webhook signature")
        try:
            payload = json.loads(raw_body)
        except json.JSONDecodeError as exc:
            raise SignatureError("Webhook body is not valid JSON") from exc
        return webhook_event(payload, "type")

    def handle_webhook_event(self, event: WebhookEvent) -> WebhookResult:
        obj = event_object(event.payload, "data", "object")
        match event.type:
            case "payment_intent.succeeded":
                return WebhookResult(
                    True,
                    WebhookAction.payment_succeeded,
                    {
                        "processor_transaction_id": require_field(obj, "id"),
                        "amount": _from_cents(obj.get("amount")),
                        "currency": (obj.get("currency") or "usd").upper(),
                        "customer_id": obj.get("customer"),
                        "metadata": obj.get("metadata") or {},
                    },
                )
            case "payment_intent.payment_failed":
                last_error = obj.get("last_payment_error") or {}
                return WebhookResult(
                    True,
                    WebhookAction.payment_failed,
                    {
                        "processor_transaction_id": require_field(obj, "id"),
                        "amount": _from_cents(obj.get("amount")),
                        "currency": (obj.get("currency") or "usd").upper(),
                        "customer_id": obj.get("customer"),
                        "failure_code": last_error.get("decline_code") or last_error.get("code"),
                        "failure_message": last_error.get("message"),
                        "metadata": obj.get("metadata") or {},
                    },
                )
            case "invoice.payment_succeeded":
                lines = event_object(obj, "lines").get("data") or []
                period_end = event_object(lines[0], "period").get("end") if lines else None
                return WebhookResult(
                    True,
                    WebhookAction.invoice_payment_succeeded,
                    {
                        "invoice_id": require_field(obj, "id"),
                        "subscription_id": obj.get("subscription"),
                        "customer_id": obj.get("customer"),
                        "amount": _from_cents(obj.get("amount_paid")),
                        "currency": (obj.get("currency") or "usd").upper(),
                        "period_end": _from_timestamp(period_end or obj.get("period_end")),
                    },
                )
            case "invoice.payment_failed":
                return WebhookResult(
                    True,
                    WebhookAction.invoice_payment_failed,
                    {
                        "invoice_id": require_field(obj, "id"),
                        "subscription_id": obj.get("subscription"),
                        "customer_id": obj.get("customer"),
                        "amount": _from_cents(obj.get("amount_due")),
                        "currency": (obj.get("currency") or "usd").upper(),
                        "attempt_count": obj.get("attempt_count"),
                        "failure_code": None,
                    },
                )
            case "customer.subscription.created" | "customer.subscription.updated":
                action = (
                    WebhookAction.subscription_created
                    if event.type.endswith("created")
                    else WebhookAction.subscription_updated
                )
                return WebhookResult(
                    True,
                    action,
                    {
                        "subscription_id": require_field(obj, "id"),
                        "customer_id": obj.get("customer"),
                        "status": map_subscription_status(obj.get("status")),
                        "current_period_end": _from_timestamp(obj.get("current_period_end")),
                        "cancel_at_period_end": bool(obj.get("cancel_at_period_end")),
                    },
                )
            case "customer.subscription.deleted":
                return WebhookResult(
                    True,
                    WebhookAction.subscription_deleted,
                    {
                        "subscription_id": require_field(obj, "id"),
                        "customer_id": obj.get("customer"),
                        "canceled_at": _from_timestamp(obj.get("canceled_at")),
                    },
                )
            case "charge.dispute.created":
                return WebhookResult(
                    True,
                    WebhookAction.dispute_created,
                    {
                        "processor_dispute_id": require_field(obj, "id"),
                        "processor_transaction_id": obj.get("payment_intent") or obj.get("charge"),
                        "amount": _from_cents(obj.get("amount")),
                        "currency": (obj.get("currency") or "usd").upper(),
                        "reason": obj.get("reason"),
                        "dispute_type": map_dispute_type(obj.get("reason")),
                        "evidence_due_by": _from_timestamp(
                            (obj.get("evidence_details") or {}).get("due_by")
                        ),
                    },
                )
            case _:
                logger.info("Unhandled Stripe webhook event type: %s", event.type)
                return WebhookResult(False)
