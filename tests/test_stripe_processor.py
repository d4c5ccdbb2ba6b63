"""Unit tests for the Stripe REST client."""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import pytest

from harbor_billing.errors import ProcessorError, SignatureError, ValidationError
from harbor_billing.services.processors import (
    PaymentStatus,
    StripeProcessor,
    SubscriptionPatch,
    WebhookAction,
    WebhookEvent,
)
from harbor_billing.services.processors.stripe import _flatten
from tests.mocks import FakeHTTPXResponse

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture()
def stripe() -> StripeProcessor:
    return StripeProcessor(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


@pytest.fixture()
def mocked_http_client() -> tuple[MagicMock, MagicMock]:
    with patch("harbor_billing.services.processors.stripe.httpx.Client") as mock_client_cls:
        mock_client = MagicMock(name="mock_httpx_client")
        mock_client_cls.return_value.__enter__.return_value = mock_client
        yield mock_client_cls, mock_client


def _sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"), str(timestamp).encode("utf-8") + b"." + body, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_flatten_encodes_nested_params():
    flat = _flatten(
        {
            "customer": "cus_1",
            "items": [{"price": "price_a"}],
            "metadata": {"source": "harborlist", "skip": None},
            "confirm": True,
        }
    )
    assert flat == {
        "customer": "cus_1",
        "items[0][price]": "price_a",
        "metadata[source]": "harborlist",
        "confirm": "true",
    }


def test_unconfigured_processor_never_calls_out(mocked_http_client):
    mock_client_cls, _ = mocked_http_client
    processor = StripeProcessor(secret_key="", webhook_secret=WEBHOOK_SECRET)

    assert processor.is_configured() is False
    with pytest.raises(ProcessorError, match="Stripe is not configured"):
        processor.create_customer("owner@example.com", "Owner")
    mock_client_cls.assert_not_called()


def test_process_payment_succeeded(stripe, mocked_http_client):
    mock_client_cls, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        200, {"id": "pi_123", "status": "succeeded"}
    )

    result = stripe.process_payment(
        Decimal("29.99"),
        "USD",
        "pm_card_visa",
        {"customer_id": "cus_1", "transaction_id": "txn_1"},
        idempotency_key="renewal-abc-1700000000",
    )

    assert result.status == PaymentStatus.succeeded
    assert result.transaction_id == "pi_123"
    mock_client_cls.assert_called_once_with(timeout=5.0)
    method, url = mock_client.request.call_args.args
    kwargs = mock_client.request.call_args.kwargs
    assert method == "POST"
    assert url == "https://api.stripe.test/v1/payment_intents"
    assert kwargs["data"]["amount"] == "2999"
    assert kwargs["data"]["currency"] == "usd"
    assert kwargs["data"]["customer"] == "cus_1"
    assert kwargs["data"]["off_session"] == "true"
    assert kwargs["data"]["metadata[source]"] == "harborlist"
    assert kwargs["headers"]["Authorization"] == "Bearer sk_test_123"
    assert kwargs["headers"]["Idempotency-Key"] == "renewal-abc-1700000000"


def test_card_error_is_a_failed_result(stripe, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        402,
        {
            "error": {
                "type": "card_error",
                "code": "card_declined",
                "decline_code": "insufficient_funds",
                "message": "Your card has insufficient funds.",
                "payment_intent": {"id": "pi_declined"},
            }
        },
    )

    result = stripe.process_payment(Decimal("10"), "usd", "pm_1")

    assert result.status == PaymentStatus.failed
    assert result.transaction_id == "pi_declined"
    assert result.failure_code == "insufficient_funds"
    assert result.failure_message == "Your card has insufficient funds."


def test_requires_action_is_pending(stripe, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        200, {"id": "pi_3ds", "status": "requires_action"}
    )
    assert stripe.process_payment(Decimal("10"), "usd", "pm_1").status == PaymentStatus.pending


def test_api_error_raises(stripe, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        400,
        {
            "error": {
                "type": "invalid_request_error",
                "code": "resource_missing",
                "message": "No such customer: cus_missing",
            }
        },
    )

    with pytest.raises(ProcessorError, match="No such customer") as exc_info:
        stripe.create_customer("owner@example.com", "Owner")
    assert exc_info.value.details == {"processor_code": "resource_missing"}


def test_transport_error_keeps_cause(stripe, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.side_effect = httpx.ConnectTimeout("timed out")

    with pytest.raises(ProcessorError) as exc_info:
        stripe.process_payment(Decimal("10"), "usd", "pm_1")
    assert isinstance(exc_info.value.__cause__, httpx.TransportError)


def test_invalid_json_raises(stripe, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(502, content=b"<html>")

    with pytest.raises(ProcessorError, match="invalid JSON"):
        stripe.cancel_subscription("sub_1")


def test_create_subscription_with_trial(stripe, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        200, {"id": "sub_1", "status": "trialing", "trial_end": 1767225600}
    )

    result = stripe.create_subscription(
        "cus_1", "price_premium_individual_monthly", "pm_1", {"user_id": "u1"}, trial_days=14
    )

    assert result.subscription_id == "sub_1"
    assert result.status == "trialing"
    assert result.trial_end is not None
    data = mock_client.request.call_args.kwargs["data"]
    assert data["items[0][price]"] == "price_premium_individual_monthly"
    assert data["trial_period_days"] == "14"
    assert data["metadata[user_id]"] == "u1"


def test_plan_change_swaps_the_subscription_item(stripe, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.get.return_value = FakeHTTPXResponse(
        200, {"id": "sub_1", "items": {"data": [{"id": "si_1"}]}}
    )
    mock_client.request.return_value = FakeHTTPXResponse(200, {"id": "sub_1"})

    stripe.update_subscription("sub_1", SubscriptionPatch(price_ref="price_premium_dealer_monthly"))

    data = mock_client.request.call_args.kwargs["data"]
    assert data["items[0][id]"] == "si_1"
    assert data["items[0][price]"] == "price_premium_dealer_monthly"
    assert data["proration_behavior"] == "none"


def test_empty_patch_is_a_noop(stripe, mocked_http_client):
    mock_client_cls, _ = mocked_http_client
    stripe.update_subscription("sub_1", SubscriptionPatch())
    mock_client_cls.assert_not_called()


def test_refund_with_custom_reason(stripe, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(200, {"id": "re_1", "status": "succeeded"})

    result = stripe.process_refund("pi_123", Decimal("35.00"), "proration_credit")

    assert result.refund_id == "re_1"
    assert result.status == "succeeded"
    data = mock_client.request.call_args.kwargs["data"]
    assert data["amount"] == "3500"
    assert data["reason"] == "requested_by_customer"
    assert data["metadata[reason]"] == "proration_credit"


def test_webhook_signature_verified(stripe):
    body = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded"}).encode("utf-8")

    event = stripe.construct_webhook_event(body, _sign(body))

    assert event.id == "evt_1"
    assert event.type == "invoice.payment_succeeded"


@pytest.mark.parametrize(
    "signature_factory",
    [
        lambda body: _sign(body, secret="whsec_other"),
        lambda body: _sign(body, timestamp=int(time.time()) - 3600),
        lambda body: "v1=deadbeef",
        lambda body: "t=abc,v1=deadbeef",
    ],
    ids=["wrong-secret", "stale", "no-timestamp", "bad-timestamp"],
)
def test_webhook_signature_rejected(stripe, signature_factory):
    body = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded"}).encode("utf-8")
    with pytest.raises(SignatureError):
        stripe.construct_webhook_event(body, signature_factory(body))


def test_tampered_body_rejected(stripe):
    body = json.dumps({"id": "evt_1", "type": "charge.refunded"}).encode("utf-8")
    signature = _sign(body)
    with pytest.raises(SignatureError, match="Invalid webhook signature"):
        stripe.construct_webhook_event(body.replace(b"evt_1", b"evt_2"), signature)


@pytest.mark.parametrize(
    "payload",
    [[], {"type": "invoice.paid"}, {"id": "evt_1"}, {"id": "evt_1", "type": None}],
    ids=["not-an-object", "no-id", "no-type", "null-type"],
)
def test_signed_body_without_event_shape_is_rejected(stripe, payload):
    body = json.dumps(payload).encode("utf-8")
    with pytest.raises(ValidationError) as exc_info:
        stripe.construct_webhook_event(body, _sign(body))
    assert exc_info.value.code == "INVALID_WEBHOOK"


@pytest.mark.parametrize(
    "payload",
    [{"data": None}, {"data": {"object": {}}}, {"data": {"object": "pi_1"}}],
    ids=["null-data", "object-without-id", "object-not-a-dict"],
)
def test_handled_event_without_object_id_is_rejected(stripe, payload):
    event = WebhookEvent(id="evt_1", type="payment_intent.succeeded", payload=payload)
    with pytest.raises(ValidationError, match="missing id"):
        stripe.handle_webhook_event(event)


def test_normalizes_payment_failure(stripe):
    event = WebhookEvent(
        id="evt_1",
        type="payment_intent.payment_failed",
        payload={
            "data": {
                "object": {
                    "id": "pi_1",
                    "amount": 9999,
                    "currency": "usd",
                    "customer": "cus_1",
                    "last_payment_error": {"code": "expired_card", "message": "Expired"},
                    "metadata": {"transaction_id": "txn_1"},
                }
            }
        },
    )

    result = stripe.handle_webhook_event(event)

    assert result.handled is True
    assert result.action == WebhookAction.payment_failed
    assert result.data["amount"] == Decimal("99.99")
    assert result.data["currency"] == "USD"
    assert result.data["failure_code"] == "expired_card"
    assert result.data["metadata"] == {"transaction_id": "txn_1"}


def test_unknown_event_is_not_handled(stripe):
    event = WebhookEvent(id="evt_1", type="customer.created", payload={"data": {"object": {}}})
    result = stripe.handle_webhook_event(event)
    assert result.handled is False
    assert result.action == WebhookAction.unknown
