"""Tests for structured error responses with request_id."""
from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from billing_engine.errors import register_error_handlers
from billing_engine.observability import ObservabilityMiddleware
from billing_engine.schemas.course import CourseCheckoutReason
from billing_engine.services.billing.exceptions import (
    CourseCheckoutError,
    PaymentNotFoundError,
    ProviderStartError,
)


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

    @app.get("/http-error-dict")
    def http_error_dict():
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_input", "message": "Bad field", "details": {"field": "name"}},
        )

    @app.get("/missing-payment")
    def missing_payment():
        raise PaymentNotFoundError("Payment 42 not found")

    @app.get("/gateway-down")
    def gateway_down():
        raise ProviderStartError()

    @app.get("/course-error")
    def course_error():
        raise CourseCheckoutError(CourseCheckoutReason.INSTALLMENTS_DISABLED)

    @app.get("/crash")
    def crash():
        raise RuntimeError("boom")

    return app


@pytest.fixture
def error_client(app_with_errors: FastAPI) -> TestClient:
    return TestClient(app_with_errors, raise_server_exceptions=False)


class TestErrorResponses:
    def test_http_error_includes_request_id(self, error_client: TestClient) -> None:
        resp = error_client.get("/http-error")
        assert resp.status_code == 403
        body = resp.json()
        assert "request_id" in body
        assert body["code"] == "http_403"
        assert body["message"] == "Forbidden"

    def test_http_error_dict_detail(self, error_client: TestClient) -> None:
        resp = error_client.get("/http-error-dict")
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "invalid_input"
        assert body["details"] == {"field": "name"}

    def test_billing_error_uses_its_code(self, error_client: TestClient) -> None:
        resp = error_client.get("/missing-payment")
        assert resp.status_code == 404
        body = resp.json()
        assert body["code"] == "payment_not_found"
        assert body["message"] == "Payment 42 not found"
        assert body["details"] is None

    def test_billing_error_default_message(self, error_client: TestClient) -> None:
        resp = error_client.get("/gateway-down")
        assert resp.status_code == 502
        assert resp.json()["message"] == "provider_unavailable"

    def test_course_error_carries_reason(self, error_client: TestClient) -> None:
        resp = error_client.get("/course-error")
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "course_checkout_failed"
        assert body["details"] == {"reason": "INSTALLMENTS_DISABLED"}

    def test_unhandled_exception_hides_details(self, error_client: TestClient) -> None:
        resp = error_client.get("/crash")
        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "internal_error"
        assert body["details"] is None

    def test_request_id_propagated_from_header(self, error_client: TestClient) -> None:
        resp = error_client.get("/missing-payment", headers={"X-Request-Id": "rid-777"})
        assert resp.json()["request_id"] == "rid-777"

    def test_success_response_has_request_id_header(self, error_client: TestClient) -> None:
        resp = error_client.get("/ok")
        assert resp.status_code == 200
        assert "x-request-id" in resp.headers
