"""Tests for structured error responses with request_id."""
from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from sqlalchemy.orm.exc import StaleDataError

from harbor_billing.errors import (
    BillingAccountNotFound,
    ConflictError,
    ProcessorError,
    ValidationError,
    register_error_handlers,
)
from harbor_billing.observability import ObservabilityMiddleware


class _Payload(BaseModel):
    amount: int


@pytest.fixture
def app_with_errors() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)

    @app.get("/ok")
    def ok():
        return {"ok": True}

    @app.get("/http-error")
    def http_error():
        raise HTTPException(status_code=403, detail="Forbidden")

    @app.get("/not-found")
    def not_found():
        raise BillingAccountNotFound("Billing account not found")

    @app.get("/bad-refund")
    def bad_refund():
        raise ValidationError(
            "Refund amount must be between 0.01 and 29.99",
            code="INVALID_REFUND_AMOUNT",
            details={"refundable": "29.99"},
        )

    @app.get("/conflict")
    def conflict():
        raise ConflictError("Billing account already has a subscription", code="SUBSCRIPTION_EXISTS")

    @app.get("/processor")
    def processor():
        raise ProcessorError("Proration charge failed", code="PRORATION_FAILED")

    @app.get("/stale")
    def stale():
        raise StaleDataError("UPDATE statement on table 'billing_accounts' expected 1 row")

    @app.post("/validate")
    def validate(payload: _Payload):
        return payload

    @app.get("/crash")
    def crash():
        raise RuntimeError("boom")

    return app


@pytest.fixture
def client(app_with_errors: FastAPI) -> TestClient:
    return TestClient(app_with_errors, raise_server_exceptions=False)


class TestErrorResponses:
    def test_http_error_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/http-error")
        assert resp.status_code == 403
        body = resp.json()
        assert "request_id" in body
        assert body["code"] == "http_403"
        assert body["message"] == "Forbidden"

    def test_billing_error_uses_its_code(self, client: TestClient) -> None:
        resp = client.get("/not-found")
        assert resp.status_code == 404
        body = resp.json()
        assert body["code"] == "BILLING_ACCOUNT_NOT_FOUND"
        assert body["message"] == "Billing account not found"
        assert body["details"] is None

    def test_billing_error_details(self, client: TestClient) -> None:
        resp = client.get("/bad-refund")
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "INVALID_REFUND_AMOUNT"
        assert body["details"] == {"refundable": "29.99"}

    def test_conflict(self, client: TestClient) -> None:
        resp = client.get("/conflict")
        assert resp.status_code == 409
        assert resp.json()["code"] == "SUBSCRIPTION_EXISTS"

    def test_processor_error_is_a_server_error(self, client: TestClient) -> None:
        resp = client.get("/processor")
        assert resp.status_code == 500
        assert resp.json()["code"] == "PRORATION_FAILED"

    def test_concurrent_update(self, client: TestClient) -> None:
        resp = client.get("/stale")
        assert resp.status_code == 409
        assert resp.json()["code"] == "CONCURRENT_UPDATE"

    def test_request_validation(self, client: TestClient) -> None:
        resp = client.post("/validate", json={"amount": "lots"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["details"][0]["loc"] == ["body", "amount"]

    def test_unhandled_exception_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/crash")
        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "internal_error"
        assert body["message"] == "Internal server error"
        assert "request_id" in body
        # Should NOT leak exception details
        assert body["details"] is None

    def test_request_id_propagated_from_header(self, client: TestClient) -> None:
        custom_id = "test-request-id-12345"
        resp = client.get("/not-found", headers={"X-Request-Id": custom_id})
        assert resp.json()["request_id"] == custom_id
        assert resp.headers["x-request-id"] == custom_id

    def test_success_response_has_request_id_header(self, client: TestClient) -> None:
        resp = client.get("/ok")
        assert resp.status_code == 200
        assert "x-request-id" in resp.headers


class TestBillingErrors:
    def test_str_is_the_message(self) -> None:
        assert str(ProcessorError("Stripe process_payment failed")) == (
            "Stripe process_payment failed"
        )

    def test_status_override(self) -> None:
        exc = ProcessorError("A payment_method_id or card token is required", status_code=400)
        assert exc.status_code == 400
        assert exc.code == "SUBSCRIPTION_ERROR"
