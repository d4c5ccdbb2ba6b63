import json
from datetime import UTC, datetime, timedelta

from harbor_billing.models.billing import BillingAccountStatus
from tests.mocks import VALID_SIGNATURE


def _body(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def test_api_webhook_unknown_processor(client):
    resp = client.post("/billing/webhooks/square", content=b"{}")
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_WEBHOOK"


def test_api_webhook_missing_signature(client):
    resp = client.post(
        "/billing/webhooks/stripe", content=_body("evt_1", "invoice.payment_succeeded", {})
    )
    assert resp.status_code == 400


def test_api_webhook_bad_signature(client):
    resp = client.post(
        "/billing/webhooks/stripe",
        content=_body("evt_1", "invoice.payment_succeeded", {"id": "in_1"}),
        headers={"stripe-signature": "t=1,v1=forged"},
    )
    assert resp.status_code == 401
    assert resp.json()["code"] == "INVALID_SIGNATURE"


def test_api_webhook_renewal_then_duplicate(client, subscribed_account, db_session):
    period_end = datetime.now(UTC).replace(microsecond=0) + timedelta(days=40)
    body = _body(
        "evt_api_renewal",
        "invoice.payment_succeeded",
        {
            "id": "in_api",
            "subscription": subscribed_account.subscription_id,
            "lines": {"data": [{"period": {"end": int(period_end.timestamp())}}]},
        },
    )
    headers = {"stripe-signature": VALID_SIGNATURE}

    first = client.post("/api/v1/billing/webhooks/stripe", content=body, headers=headers)
    second = client.post("/billing/webhooks/stripe", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["processed"] is True
    assert second.status_code == 200
    assert second.json() == {"received": True, "duplicate": True}
    db_session.refresh(subscribed_account)
    assert subscribed_account.status == BillingAccountStatus.active


def test_api_webhook_needs_no_bearer_token(client):
    resp = client.post(
        "/billing/webhooks/stripe",
        content=_body("evt_unhandled", "customer.created", {"id": "cus_1"}),
        headers={"stripe-signature": VALID_SIGNATURE},
    )
    assert resp.status_code == 200
    assert resp.json()["action"] == "unknown"


def test_api_webhook_body_without_event_id(client):
    resp = client.post(
        "/billing/webhooks/stripe",
        content=json.dumps({"type": "invoice.payment_succeeded"}).encode(),
        headers={"stripe-signature": VALID_SIGNATURE},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_WEBHOOK"
