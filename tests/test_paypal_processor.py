"""Unit tests for the PayPal REST client."""

import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from harbor_billing.errors import ProcessorError, SignatureError, ValidationError
from harbor_billing.services.processors import (
    PaymentStatus,
    PayPalProcessor,
    SubscriptionPatch,
    WebhookAction,
    WebhookEvent,
)
from harbor_billing.services.processors.paypal import PAYPAL_LIVE_URL, PAYPAL_SANDBOX_URL
from tests.mocks import FakeHTTPXResponse

TRANSMISSION_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-sig": "c2lnbmF0dXJl",
    "paypal-transmission-time": "2026-03-01T12:00:00Z",
}


@pytest.fixture()
def paypal() -> PayPalProcessor:
    return PayPalProcessor(
        client_id="client", client_secret="secret", environment="sandbox", webhook_id="WH-1"
    )


@pytest.fixture()
def mocked_http_client() -> tuple[MagicMock, MagicMock]:
    with patch("harbor_billing.services.processors.paypal.httpx.Client") as mock_client_cls:
        mock_client = MagicMock(name="mock_httpx_client")
        mock_client_cls.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = FakeHTTPXResponse(
            200, {"access_token": "A21AA-token", "expires_in": 32400}
        )
        yield mock_client_cls, mock_client


def _event(event_type: str, resource: dict) -> WebhookEvent:
    return WebhookEvent(
        id="WH-EVT-1",
        type=event_type,
        payload={"id": "WH-EVT-1", "event_type": event_type, "resource": resource},
    )


def test_environment_selects_base_url():
    assert PayPalProcessor(environment="live")._base_url == PAYPAL_LIVE_URL
    assert PayPalProcessor(environment="sandbox")._base_url == PAYPAL_SANDBOX_URL


def test_customers_are_minted_locally(paypal, mocked_http_client):
    mock_client_cls, _ = mocked_http_client

    customer = paypal.create_customer("owner@example.com", "Owner")
    method = paypal.create_payment_method(customer.customer_id, {"vault_id": "vault_1"})

    assert customer.customer_id.startswith("paypal_")
    assert method.payment_method_id == "vault_1"
    mock_client_cls.assert_not_called()


def test_capture_completed(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        201,
        {
            "id": "ORDER-1",
            "status": "COMPLETED",
            "purchase_units": [
                {"payments": {"captures": [{"id": "CAPTURE-1", "status": "COMPLETED"}]}}
            ],
        },
    )

    result = paypal.process_payment(
        Decimal("29.99"),
        "usd",
        "vault_1",
        {"transaction_id": "txn_1", "billing_account_id": "acct_1"},
        idempotency_key="renewal-acct_1-1700000000",
    )

    assert result.status == PaymentStatus.succeeded
    assert result.transaction_id == "CAPTURE-1"
    method, url = mock_client.request.call_args.args
    kwargs = mock_client.request.call_args.kwargs
    assert method == "POST"
    assert url == f"{PAYPAL_SANDBOX_URL}/v2/checkout/orders"
    unit = kwargs["json"]["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "USD", "value": "29.99"}
    assert unit["invoice_id"] == "txn_1"
    assert kwargs["json"]["payment_source"] == {"paypal": {"vault_id": "vault_1"}}
    assert kwargs["headers"]["Authorization"] == "Bearer A21AA-token"
    assert kwargs["headers"]["PayPal-Request-Id"] == "renewal-acct_1-1700000000"


def test_unprocessable_capture_is_a_failed_result(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        422,
        {
            "name": "UNPROCESSABLE_ENTITY",
            "message": "The requested action could not be performed.",
            "debug_id": "dbg_1",
            "details": [{"issue": "INSTRUMENT_DECLINED"}],
        },
    )

    result = paypal.process_payment(Decimal("29.99"), "USD", "vault_1")

    assert result.status == PaymentStatus.failed
    assert result.failure_code == "INSTRUMENT_DECLINED"


def test_declined_capture(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        201,
        {
            "id": "ORDER-2",
            "status": "COMPLETED",
            "purchase_units": [
                {
                    "payments": {
                        "captures": [
                            {
                                "id": "CAPTURE-2",
                                "status": "DECLINED",
                                "status_details": {"reason": "DECLINED_BY_RISK_FRAUD_FILTERS"},
                            }
                        ]
                    }
                }
            ],
        },
    )

    result = paypal.process_payment(Decimal("29.99"), "USD", "vault_1")

    assert result.status == PaymentStatus.failed
    assert result.failure_code == "DECLINED_BY_RISK_FRAUD_FILTERS"


def test_access_token_is_reused(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(204)

    paypal.cancel_subscription("I-1")
    paypal.cancel_subscription("I-2")

    mock_client.post.assert_called_once()
    assert mock_client.post.call_args.kwargs["auth"] == ("client", "secret")


def test_token_failure_raises(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.post.return_value = FakeHTTPXResponse(401, {"error": "invalid_client"})

    with pytest.raises(ProcessorError, match="authentication failed"):
        paypal.cancel_subscription("I-1")
    mock_client.request.assert_not_called()


def test_unconfigured_raises(mocked_http_client):
    processor = PayPalProcessor(client_id="", client_secret="")
    assert processor.is_configured() is False
    with pytest.raises(ProcessorError, match="not configured"):
        processor.cancel_subscription("I-1")


def test_api_error_raises_with_name(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        404, {"name": "RESOURCE_NOT_FOUND", "message": "The specified resource does not exist."}
    )

    with pytest.raises(ProcessorError) as exc_info:
        paypal.process_refund("CAPTURE-404", Decimal("5.00"))
    assert exc_info.value.details == {"processor_code": "RESOURCE_NOT_FOUND"}


def test_refund_sends_amount(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(
        201, {"id": "REFUND-1", "status": "COMPLETED"}
    )

    result = paypal.process_refund("CAPTURE-1", Decimal("35"), "proration_credit")

    assert result.refund_id == "REFUND-1"
    assert result.status == "completed"
    payload = mock_client.request.call_args.kwargs["json"]
    assert payload["amount"] == {"value": "35.00", "currency_code": "USD"}
    assert payload["note_to_payer"] == "proration_credit"


def test_period_end_cancellation_cancels_at_paypal(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(204)

    paypal.update_subscription("I-1", SubscriptionPatch(cancel_at_period_end=True))

    _, url = mock_client.request.call_args.args
    assert url.endswith("/v1/billing/subscriptions/I-1/cancel")


def test_webhook_signature_verified(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(200, {"verification_status": "SUCCESS"})
    body = json.dumps({"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"})

    event = paypal.construct_webhook_event(body.encode("utf-8"), json.dumps(TRANSMISSION_HEADERS))

    assert event.id == "WH-EVT-1"
    assert event.type == "PAYMENT.CAPTURE.COMPLETED"
    payload = mock_client.request.call_args.kwargs["json"]
    assert payload["webhook_id"] == "WH-1"
    assert payload["transmission_id"] == "tx-1"
    assert payload["webhook_event"]["id"] == "WH-EVT-1"


def test_webhook_signature_failure(paypal, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = FakeHTTPXResponse(200, {"verification_status": "FAILURE"})
    body = json.dumps({"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"})

    with pytest.raises(SignatureError, match="Invalid webhook signature"):
        paypal.construct_webhook_event(body.encode("utf-8"), json.dumps(TRANSMISSION_HEADERS))


@pytest.mark.parametrize(
    "signature",
    ["not-json", json.dumps({"paypal-auth-algo": "SHA256withRSA"})],
    ids=["malformed", "missing-headers"],
)
def test_webhook_without_transmission_headers(paypal, mocked_http_client, signature):
    mock_client_cls, _ = mocked_http_client
    body = json.dumps({"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"})

    with pytest.raises(SignatureError):
        paypal.construct_webhook_event(body.encode("utf-8"), signature)
    mock_client_cls.assert_not_called()


def test_subscription_payment_normalized_as_renewal(paypal):
    result = paypal.handle_webhook_event(
        _event(
            "PAYMENT.SALE.COMPLETED",
            {
                "id": "SALE-1",
                "billing_agreement_id": "I-1",
                "amount": {"total": "29.99", "currency": "USD"},
            },
        )
    )
    assert result.action == WebhookAction.invoice_payment_succeeded
    assert result.data["subscription_id"] == "I-1"
    assert result.data["amount"] == Decimal("29.99")


def test_one_off_sale_is_not_handled(paypal):
    result = paypal.handle_webhook_event(_event("PAYMENT.SALE.COMPLETED", {"id": "SALE-2"}))
    assert result.handled is False


def test_dispute_normalized(paypal):
    result = paypal.handle_webhook_event(
        _event(
            "CUSTOMER.DISPUTE.CREATED",
            {
                "dispute_id": "PP-D-1",
                "reason": "UNAUTHORISED",
                "dispute_amount": {"value": "99.99", "currency_code": "USD"},
                "disputed_transactions": [{"seller_transaction_id": "CAPTURE-1"}],
                "seller_response_due_date": "2026-03-10T00:00:00Z",
            },
        )
    )
    assert result.action == WebhookAction.dispute_created
    assert result.data["processor_transaction_id"] == "CAPTURE-1"
    assert result.data["dispute_type"].value == "fraud"
    assert result.data["evidence_due_by"].isoformat() == "2026-03-10T00:00:00+00:00"


def test_cancellation_normalized(paypal):
    result = paypal.handle_webhook_event(
        _event(
            "BILLING.SUBSCRIPTION.CANCELLED",
            {"id": "I-1", "status": "CANCELLED", "status_update_time": "2026-03-01T00:00:00Z"},
        )
    )
    assert result.action == WebhookAction.subscription_deleted
    assert result.data["subscription_id"] == "I-1"


def test_subscription_event_without_resource_id_is_rejected(paypal):
    with pytest.raises(ValidationError, match="missing id"):
        paypal.handle_webhook_event(_event("BILLING.SUBSCRIPTION.CANCELLED", {}))
