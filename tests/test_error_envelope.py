"""Error responses share one envelope: status, error {code, message, details}, request_id."""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authkernel.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authkernel.api.routes import RateLimitInfo
from authkernel.api.schemas import Envelope, ErrorBody
from authkernel.logging import set_correlation_id
from authkernel.service.errors import RateLimitedError


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_details_may_be_list(self):
        error = ErrorBody(
            code="validation_error",
            message="invalid request",
            details=[{"field": "email"}, {"field": "name"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")


class TestEnvelope:
    def test_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first, second = Envelope(status="ok"), Envelope(status="ok")
        assert first.request_id and second.request_id
        assert first.request_id != second.request_id


class TestErrorResponse:
    def test_status_mapping(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _error_code_for_status(429) == "rate_limited"
        assert _error_code_for_status(418) == "server_error"

    def test_renders_envelope_with_correlation_id(self):
        set_correlation_id("corr-1")
        response = _error_response(403, "account has been deleted", {"reason": "AccountDeleted"})
        body = json.loads(response.body)
        assert response.status_code == 403
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "forbidden",
            "message": "account has been deleted",
            "details": {"reason": "AccountDeleted"},
        }
        assert body["request_id"] == "corr-1"

    def test_headers_passed_through(self):
        response = _error_response(429, "too many requests", headers={"Retry-After": "12"})
        assert response.headers["Retry-After"] == "12"


class TestRateLimited:
    def test_error_carries_retry_after(self):
        exc = RateLimitedError(retry_after=5, headers={"X-RateLimit-Limit": "3"})
        assert exc.status_code == 429
        assert exc.detail == {"retry_after": 5}
        assert exc.headers == {"X-RateLimit-Limit": "3", "Retry-After": "5"}

    def test_handler_renders_envelope_and_headers(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/limited")
        async def limited():
            raise RateLimitedError(
                retry_after=7,
                headers=RateLimitInfo(limit=3, remaining=0, reset_seconds=7).headers(),
            )

        resp = TestClient(app).get("/limited")
        assert resp.status_code == 429
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["details"] == {"retry_after": 7}
        assert resp.headers["Retry-After"] == "7"
        assert resp.headers["X-RateLimit-Limit"] == "3"
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_rate_limit_headers(self):
        headers = RateLimitInfo(limit=5, remaining=-1, reset_seconds=30).headers()
        assert headers == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "30",
        }
