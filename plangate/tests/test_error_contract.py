"""
Error payloads rendered by the exception handlers.
"""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from plangate.core.errors import (
    AppError,
    DowngradeBlockedError,
    LifetimeCreditsExceededError,
    MonthlyDeploymentLimitError,
    NotFoundError,
    ProjectLimitError,
    app_error_handler,
    provider_error_handler,
)
from plangate.core.middleware.request_id import RequestIdMiddleware
from plangate.features.billing.provider import ProviderError


@pytest.fixture
def error_client():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(ProviderError, provider_error_handler)

    @app.get("/monthly")
    def monthly():
        raise MonthlyDeploymentLimitError("limit reached", current=10, allowed=10)

    @app.get("/missing")
    def missing():
        raise NotFoundError("nope")

    @app.get("/provider")
    def provider():
        raise ProviderError("Stripe subscription retrieval failed", status=404, code="resource_missing")

    return TestClient(app)


def test_quota_error_payload(error_client):
    response = error_client.get("/monthly", headers={"x-request-id": "rid-1"})

    assert response.status_code == 403
    assert response.json() == {
        "error": {
            "code": "monthly_deployment_limit",
            "message": "limit reached",
            "request_id": "rid-1",
            "limit": "deployments.monthly",
            "current": 10,
            "allowed": 10,
        },
        "detail": "limit reached",
    }


def test_not_found_payload(error_client):
    response = error_client.get("/missing")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"
    assert "limit" not in response.json()["error"]


def test_provider_error_payload(error_client):
    response = error_client.get("/provider")
    assert response.status_code == 502
    assert response.json()["error"]["provider_code"] == "resource_missing"


@pytest.mark.parametrize(
    "error_cls,code,limit,status",
    [
        (LifetimeCreditsExceededError, "deployment_credits_exhausted", "deployments.lifetime", 403),
        (MonthlyDeploymentLimitError, "monthly_deployment_limit", "deployments.monthly", 403),
        (ProjectLimitError, "project_limit", "projects.max", 403),
        (DowngradeBlockedError, "downgrade_blocked", "downgrade", 400),
    ],
)
def test_quota_error_kinds_are_distinct(error_cls, code, limit, status):
    err = error_cls("x", current=1, allowed=1)
    assert (err.code, err.limit_name, err.status_code) == (code, limit, status)
