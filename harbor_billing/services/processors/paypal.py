"""PayPal REST integration.

PayPal has no customer objects and approves payment methods in the buyer's
browser, so customer and payment method ids are minted locally and only
vaulted payment tokens are charged server side.
"""

import json
import logging
import secrets
import time
from datetime import datetime
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

PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"
PAYPAL_LIVE_URL = "https://api-m.paypal.com"

SIGNATURE_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _money(amount: dict[str, Any] | None) -> tuple[Decimal, str]:
    amount = amount or {}
    return to_money(amount.get("value") or "0"), amount.get("currency_code") or "USD"


class PayPalProcessor(PaymentProcessor):
    processor_type = ProcessorType.paypal

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        environment: str | None = None,
        webhook_id: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client_id = settings.paypal_client_id if client_id is None else client_id
        self._client_secret = (
            settings.paypal_client_secret if client_secret is None else client_secret
        )
        self._webhook_id = settings.paypal_webhook_id if webhook_id is None else webhook_id
        environment = environment or settings.paypal_environment
        self._base_url = PAYPAL_LIVE_URL if environment == "live" else PAYPAL_SANDBOX_URL
        self._timeout = timeout or settings.processor_timeout_seconds
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def _ensure_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not self.is_configured():
            raise ProcessorError("PayPal is not configured")
        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.post(
                    f"{self._base_url}/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self._client_id, self._client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise ProcessorError(f"PayPal authentication failed: {exc}") from exc
        if resp.status_code >= 400:
            logger.error("PayPal token request failed: %s", resp.status_code)
            raise ProcessorError("PayPal authentication failed")
        data = resp.json()
        self._access_token = data["access_token"]
        # refresh one minute early
        self._token_expires_at = time.monotonic() + int(data.get("expires_in", 0)) - 60
        return self._access_token

    def _headers(self, request_id: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._ensure_access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        payload: Any = None,
        *,
        request_id: str | None = None,
        allow_unprocessable: bool = False,
    ) -> dict[str, Any]:
        headers = self._headers(request_id)
        try:
            with PROCESSOR_LATENCY.labels("paypal", operation).time():
                with httpx.Client(timeout=self._timeout) as client:
                    resp = client.request(
                        method, f"{self._base_url}{path}", json=payload, headers=headers
                    )
        except httpx.HTTPError as exc:
            logger.error("PayPal %s transport error: %s", operation, exc)
            raise ProcessorError(f"PayPal {operation} failed: {exc}") from exc
        if resp.status_code == 204 or not resp.content:
            body: dict[str, Any] = {}
        else:
            try:
                body = resp.json()
            except ValueError as exc:
                raise ProcessorError(f"PayPal {operation} returned invalid JSON") from exc
        if resp.status_code == 422 and allow_unprocessable:
            return body
        if resp.status_code >= 400:
            logger.error("PayPal %s failed: %s", operation, body.get("message"))
            raise ProcessorError(
                body.get("message") or f"PayPal {operation} failed",
                details={"processor_code": body.get("name")},
            )
        return body

    # ── Customers & payment methods ──────────────────────

    def create_customer(
        self, email: str, name: str | None, metadata: dict[str, str] | None = None
    ) -> CustomerResult:
        customer_id = f"paypal_{secrets.token_hex(10)}"
        logger.info("Registered PayPal customer: %s", customer_id)
        return CustomerResult(customer_id=customer_id)

    def create_payment_method(
        self, customer_id: str, details: dict[str, Any]
    ) -> PaymentMethodResult:
        vault_id = details.get("vault_id") or details.get("payment_method_id")
        if vault_id:
            return PaymentMethodResult(payment_method_id=vault_id)
        payment_method_id = f"pm_paypal_{secrets.token_hex(10)}"
        logger.info(
            "Registered PayPal payment method %s for %s", payment_method_id, customer_id
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
        # trial periods live on the PayPal plan itself
        body = self._request(
            "POST",
            "/v1/billing/subscriptions",
            "create_subscription",
            {
                "plan_id": price_ref,
                "custom_id": customer_id,
                "application_context": {
                    "brand_name": "HarborList",
                    "shipping_preference": "NO_SHIPPING",
                    "user_action": "SUBSCRIBE_NOW",
                },
            },
        )
        logger.info("Created PayPal subscription: %s", body["id"])
        return SubscriptionResult(
            subscription_id=body["id"], status=str(body.get("status", "")).lower()
        )

    def update_subscription(self, subscription_id: str, patch: SubscriptionPatch) -> None:
        if patch.price_ref:
            self._request(
                "POST",
                f"/v1/billing/subscriptions/{subscription_id}/revise",
                "revise_subscription",
                {"plan_id": patch.price_ref},
            )
        if patch.cancel_at_period_end:
            # PayPal keeps the paid period after cancellation
            self._request(
                "POST",
                f"/v1/billing/subscriptions/{subscription_id}/cancel",
                "cancel_subscription",
                {"reason": "Canceled at period end"},
            )

    def cancel_subscription(self, subscription_id: str) -> None:
        self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            "cancel_subscription",
            {"reason": "User requested cancellation"},
        )
        logger.info("Canceled PayPal subscription: %s", subscription_id)

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
        metadata = metadata or {}
        body = self._request(
            "POST",
            "/v2/checkout/orders",
            "process_payment",
            {
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "amount": {
                            "currency_code": currency.upper(),
                            "value": str(to_money(amount)),
                        },
                        "description": "HarborList Payment",
                        "custom_id": metadata.get("billing_account_id"),
                        "invoice_id": metadata.get("transaction_id"),
                    }
                ],
                "payment_source": {"paypal": {"vault_id": payment_method_id}},
            },
            request_id=idempotency_key or metadata.get("transaction_id"),
            allow_unprocessable=True,
        )
        if body.get("name") == "UNPROCESSABLE_ENTITY":
            issue = ((body.get("details") or [{}])[0]).get("issue")
            return PaymentResult(
                transaction_id=body.get("debug_id", ""),
                status=PaymentStatus.failed,
                failure_code=issue,
                failure_message=body.get("message"),
            )
        captures = (
            ((body.get("purchase_units") or [{}])[0].get("payments") or {}).get("captures")
            or []
        )
        capture = captures[0] if captures else {}
        if body.get("status") == "COMPLETED" and capture.get("status") == "COMPLETED":
            return PaymentResult(transaction_id=capture["id"], status=PaymentStatus.succeeded)
        if capture.get("status") in ("DECLINED", "FAILED"):
            return PaymentResult(
                transaction_id=capture["id"],
                status=PaymentStatus.failed,
                failure_code=(capture.get("status_details") or {}).get("reason"),
            )
        return PaymentResult(
            transaction_id=capture.get("id") or body["id"], status=PaymentStatus.pending
        )

    def process_refund(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        currency: str = "USD",
    ) -> RefundResult:
        payload: dict[str, Any] = {"note_to_payer": reason or "Refund requested"}
        if amount is not None:
            payload["amount"] = {"value": str(to_money(amount)), "currency_code": currency}
        body = self._request(
            "POST",
            f"/v2/payments/captures/{transaction_id}/refund",
            "process_refund",
            payload,
        )
        logger.info("Created PayPal refund %s for %s", body["id"], transaction_id)
        return RefundResult(refund_id=body["id"], status=str(body.get("status", "")).lower())

    # ── Webhooks ─────────────────────────────────────────

    def construct_webhook_event(self, raw_body: bytes, signature: str) -> WebhookEvent:
        """``signature`` is the JSON-encoded PayPal transmission headers."""
        if not self._webhook_id:
            raise SignatureError("PayPal webhook id is not configured")
        try:
            headers = json.loads(signature)
            payload = json.loads(raw_body)
        except (TypeError, json.JSONDecodeError) as exc:
            raise SignatureError("Malformed PayPal webhook delivery") from exc
        if not isinstance(headers, dict) or any(not headers.get(h) for h in SIGNATURE_HEADERS):
            raise SignatureError("Missing PayPal transmission headers")
        try:
            body = self._request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                "verify_webhook_signature",
                {
                    "auth_algo": headers["paypal-auth-algo"],
                    "cert_url": headers["paypal-cert-url"],
                    "transmission_id": headers["paypal-transmission-id"],
                    "transmission_sig": headers["paypal-transmission-sig"],
                    "transmission_time": headers["paypal-transmission-time"],
                    "webhook_id": self._webhook_id,
                    "webhook_event": payload,
                },
            )
        except ProcessorError as exc:
            raise SignatureError(f"Could not verify PayPal signature: {exc}") from exc
        if body.get("verification_status") != "SUCCESS":
            raise SignatureError("Invalid webhook signature")
        return webhook_event(payload, "event_type")

    def handle_webhook_event(self, event: WebhookEvent) -> WebhookResult:
        resource = event_object(event.payload, "resource")
        match event.type:
            case "PAYMENT.CAPTURE.COMPLETED":
                amount, currency = _money(resource.get("amount"))
                return WebhookResult(
                    True,
                    WebhookAction.payment_succeeded,
                    {
                        "processor_transaction_id": require_field(resource, "id"),
                        "amount": amount,
                        "currency": currency,
                        "metadata": {"custom_id": resource.get("custom_id")},
                    },
                )
            case "PAYMENT.CAPTURE.DENIED" | "PAYMENT.CAPTURE.DECLINED":
                amount, currency = _money(resource.get("amount"))
                return WebhookResult(
                    True,
                    WebhookAction.payment_failed,
                    {
                        "processor_transaction_id": require_field(resource, "id"),
                        "amount": amount,
                        "currency": currency,
                        "failure_code": (resource.get("status_details") or {}).get("reason"),
                        "failure_message": None,
                    },
                )
            case "PAYMENT.SALE.COMPLETED" if resource.get("billing_agreement_id"):
                amount = to_money((resource.get("amount") or {}).get("total") or "0")
                return WebhookResult(
                    True,
                    WebhookAction.invoice_payment_succeeded,
                    {
                        "invoice_id": require_field(resource, "id"),
                        "subscription_id": require_field(resource, "billing_agreement_id"),
                        "amount": amount,
                        "currency": (resource.get("amount") or {}).get("currency", "USD"),
                        "period_end": None,
                    },
                )
            case "BILLING.SUBSCRIPTION.PAYMENT.FAILED":
                billing_info = resource.get("billing_info") or {}
                amount, currency = _money(billing_info.get("outstanding_balance"))
                return WebhookResult(
                    True,
                    WebhookAction.invoice_payment_failed,
                    {
                        "invoice_id": event.id,
                        "subscription_id": require_field(resource, "id"),
                        "amount": amount,
                        "currency": currency,
                        "attempt_count": billing_info.get("failed_payments_count"),
                        "failure_code": None,
                    },
                )
            case (
                "BILLING.SUBSCRIPTION.CREATED"
                | "BILLING.SUBSCRIPTION.ACTIVATED"
                | "BILLING.SUBSCRIPTION.UPDATED"
                | "BILLING.SUBSCRIPTION.SUSPENDED"
            ):
                action = (
                    WebhookAction.subscription_created
                    if event.type == "BILLING.SUBSCRIPTION.CREATED"
                    else WebhookAction.subscription_updated
                )
                return WebhookResult(
                    True,
                    action,
                    {
                        "subscription_id": require_field(resource, "id"),
                        "status": map_subscription_status(resource.get("status")),
                        "current_period_end": _parse_time(
                            (resource.get("billing_info") or {}).get("next_billing_time")
                        ),
                        "cancel_at_period_end": False,
                    },
                )
            case "BILLING.SUBSCRIPTION.CANCELLED" | "BILLING.SUBSCRIPTION.EXPIRED":
                return WebhookResult(
                    True,
                    WebhookAction.subscription_deleted,
                    {
                        "subscription_id": require_field(resource, "id"),
                        "canceled_at": _parse_time(resource.get("status_update_time")),
                    },
                )
            case "CUSTOMER.DISPUTE.CREATED":
                amount, currency = _money(resource.get("dispute_amount"))
                disputed = (resource.get("disputed_transactions") or [{}])[0]
                return WebhookResult(
                    True,
                    WebhookAction.dispute_created,
                    {
                        "processor_dispute_id": require_field(resource, "dispute_id"),
                        "processor_transaction_id": disputed.get("seller_transaction_id"),
                        "amount": amount,
                        "currency": currency,
                        "reason": resource.get("reason"),
                        "dispute_type": map_dispute_type(resource.get("reason")),
                        "evidence_due_by": _parse_time(resource.get("seller_response_due_date")),
                    },
                )
            case _:
                logger.info("Unhandled PayPal webhook event type: %s", event.type)
                return WebhookResult(False)
