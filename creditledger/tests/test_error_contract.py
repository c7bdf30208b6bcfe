"""Tests for normalized error responses."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from creditledger.core.errors import AppError, app_error_handler, unhandled_exception_handler
from creditledger.core.middleware.request_id import RequestIdMiddleware


def test_validation_error_has_standard_shape(client):
    resp = client.post("/api/credits/consume", json={"feature": "nope"}, headers={"X-User-Id": "user_x1"})
    assert resp.status_code == 400
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_incoming_request_id_is_echoed(client):
    resp = client.post(
        "/api/credits/consume",
        json={"feature": "score_check"},
        headers={"X-User-Id": "user_x2", "x-request-id": "rid-123"},
    )
    assert resp.status_code == 402
    assert resp.headers["x-request-id"] == "rid-123"
    assert resp.json()["error"]["request_id"] == "rid-123"


def test_unauthorized_error_normalized(client):
    resp = client.post("/api/purchases/free-trial")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
    assert resp.headers.get("x-request-id")


def test_unhandled_exception_is_500_without_internals():
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(AppError, app_error_handler)
    test_app.add_exception_handler(Exception, unhandled_exception_handler)

    @test_app.get("/boom")
    def explode():
        raise RuntimeError("secret connection string")

    client = TestClient(test_app, raise_server_exceptions=False)
    resp = client.get("/boom")

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal_error"
    assert "secret" not in resp.text
