"""Tests for normalized error responses."""

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from heirloom.core.errors import (
    AppError,
    ConflictError,
    FeatureAccessDenied,
    app_error_handler,
    http_error_handler,
    integrity_error_handler,
    unhandled_exception_handler,
)
from heirloom.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get("/denied")
    def denied():
        raise FeatureAccessDenied(
            "You have reached your voice clones limit (1). Upgrade your plan to continue.",
            reason="limit_reached",
            extra={"limit": 1, "current_usage": 1, "remaining": 0},
        )

    @app.get("/conflict")
    def conflict():
        raise ConflictError("already subscribed")

    @app.get("/integrity")
    def integrity():
        raise IntegrityError("INSERT ...", {}, Exception("duplicate key"))

    @app.get("/boom")
    def boom():
        raise RuntimeError("kaput")

    return app


def test_app_error_has_standard_shape():
    client = TestClient(_make_app())
    resp = client.get("/denied")
    assert resp.status_code == 403
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "feature_access_denied"
    assert body["error"]["request_id"] == rid
    assert body["reason"] == "limit_reached"
    assert body["limit"] == 1
    assert body["remaining"] == 0
    assert body["detail"].startswith("You have reached your voice clones limit")


def test_conflict_error():
    client = TestClient(_make_app())
    resp = client.get("/conflict")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_integrity_error_maps_to_409():
    client = TestClient(_make_app())
    resp = client.get("/integrity")
    assert resp.status_code == 409
    assert "duplicate key" not in resp.text


def test_not_found_route():
    client = TestClient(_make_app())
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_unhandled_exception_is_500_without_details():
    client = TestClient(_make_app(), raise_server_exceptions=False)
    resp = client.get("/boom", headers={"X-Request-Id": "rid-boom"})
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal_error"
    assert body["error"]["request_id"] == "rid-boom"
    assert "kaput" not in resp.text


def test_main_app_validation_error(client):
    resp = client.get("/api/subscription/change-plan/preview", headers={"X-User-Id": "user_alice"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["request_id"] == resp.headers.get("x-request-id")
