"""
Identity API Router Tests

Exercises the HTTP surface with the engine replaced by AsyncMocks:
- status codes for each engine error kind
- internal API key enforcement
- registration throttling

Run with: pytest tests/test_identity_router.py -v
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import APIRouter, FastAPI, status
from fastapi.testclient import TestClient

from config import get_settings
from identity.authorization import AuthorizationDecision
from identity.consolidation import ConsolidationReport, GroupReport
from identity.errors import (
    IdentityNotResolvable,
    IdentityRaceUnresolved,
    IdentityResolutionTimeout,
    IdentityStoreUnavailable,
)
from identity.normalizer import normalize_identifier
from identity.router import router as identity_router
from identity.throttle import InMemoryThrottleStore, RequestThrottle
from middleware.internal_auth import InternalService, require_internal_service

from conftest import make_identity

IDENTITY_ID = "7d0c6a52-4f1e-4b8e-9a3c-2e5f6a7b8c9d"


def build_app(service, throttle_window=30):
    app = FastAPI()
    api_router = APIRouter(prefix="/api")
    api_router.include_router(identity_router)
    app.include_router(api_router)
    app.state.identity_service = service
    app.state.registration_throttle = RequestThrottle(InMemoryThrottleStore(), throttle_window)
    return app


@pytest.fixture
def service():
    service = MagicMock()
    service.resolver.normalize.side_effect = normalize_identifier
    for name in ("resolve", "authorize", "register", "customer_ids_for",
                 "run_consolidation", "find_duplicates", "get_identity"):
        setattr(service, name, AsyncMock())
    return service


@pytest.fixture
def client(service):
    app = build_app(service)
    app.dependency_overrides[require_internal_service] = lambda: InternalService(
        name="booking-service", api_key_hash="...testkey"
    )
    return TestClient(app)


class TestIdentityEndpoints:

    def test_status_is_public(self, service):
        client = TestClient(build_app(service))
        response = client.get("/api/identity/status")
        assert response.status_code == 200
        assert response.json()["module"] == "identity"

    def test_resolve_returns_identity(self, client, service):
        service.resolve.return_value = make_identity(
            IDENTITY_ID, "9876543210", datetime(2024, 1, 1, tzinfo=timezone.utc))

        response = client.post("/api/identity/resolve", json={"token": "+919876543210", "name": "Asha"})

        assert response.status_code == 200
        data = response.json()
        assert data["customer_id"] == IDENTITY_ID
        assert data["identity"]["phone"] == "9876543210"

        token, context = service.resolve.await_args.args
        assert token == "+919876543210"
        assert context.name == "Asha"
        assert context.performed_by == "booking-service"

    def test_not_resolvable_is_422(self, client, service):
        service.resolve.side_effect = IdentityNotResolvable("Cannot resolve identifier", token="12345")

        response = client.post("/api/identity/resolve", json={"token": "12345"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        detail = response.json()["detail"]
        assert detail["error"] == "identity_not_resolvable"
        assert detail["retryable"] is False

    @pytest.mark.parametrize("error", [
        IdentityRaceUnresolved("never converged"),
        IdentityResolutionTimeout("find_by_phone exceeded 5s"),
        IdentityStoreUnavailable("find_by_phone failed: OperationalError"),
    ])
    def test_retryable_errors_are_503(self, client, service, error):
        service.resolve.side_effect = error

        response = client.post("/api/identity/resolve", json={"token": "9876543210"})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["detail"]["retryable"] is True

    def test_authorize(self, client, service):
        service.authorize.return_value = AuthorizationDecision(allowed=False, reason="different_customer")

        response = client.post(
            "/api/identity/authorize",
            json={"requester_token": "9123456780", "owner_id": IDENTITY_ID}
        )

        assert response.status_code == 200
        assert response.json() == {"allowed": False, "reason": "different_customer"}

    def test_customer_ids(self, client, service):
        service.customer_ids_for.return_value = [IDENTITY_ID, "other"]

        response = client.get("/api/identity/customer-ids", params={"token": "9876543210"})

        assert response.json() == {"customer_ids": [IDENTITY_ID, "other"], "count": 2}

    def test_get_identity_not_found(self, client, service):
        service.get_identity.return_value = None

        response = client.get(f"/api/identity/identity/{IDENTITY_ID}")

        assert response.status_code == 404

    def test_duplicates(self, client, service):
        service.find_duplicates.return_value = [{"phone": "9876543210", "count": 2, "identities": []}]

        response = client.get("/api/identity/duplicates")

        assert response.json()["count"] == 1

    def test_consolidate(self, client, service):
        report = ConsolidationReport(started_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        report.groups.append(GroupReport(phone="9876543210", survivor_id=IDENTITY_ID, losers_merged=["x"]))
        service.run_consolidation.return_value = report

        response = client.post("/api/identity/consolidate", json={"backfill_legacy": True})

        assert response.status_code == 200
        assert response.json()["losers_merged"] == 1
        service.run_consolidation.assert_awaited_once_with(backfill_legacy=True)


class TestRegisterEndpoint:

    def test_register_then_throttled(self, client, service):
        service.register.return_value = make_identity(IDENTITY_ID, "9876543210", verified=True)

        first = client.post("/api/identity/register", json={"phone": "9876543210", "name": "Meera"})
        second = client.post("/api/identity/register", json={"phone": "+919876543210", "name": "Meera"})

        assert first.status_code == 200
        assert first.json()["identity"]["verified"] is True
        assert second.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert "Retry-After" in second.headers
        service.register.assert_awaited_once()

    def test_retryable_failure_does_not_throttle_retry(self, client, service):
        service.register.side_effect = [
            IdentityResolutionTimeout("register exceeded 5.0s"),
            make_identity(IDENTITY_ID, "9876543210", verified=True),
        ]

        first = client.post("/api/identity/register", json={"phone": "9876543210", "name": "Meera"})
        retry = client.post("/api/identity/register", json={"phone": "9876543210", "name": "Meera"})

        assert first.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert first.json()["detail"]["retryable"] is True
        assert retry.status_code == 200
        assert retry.json()["customer_id"] == IDENTITY_ID

    def test_non_retryable_failure_keeps_throttle(self, client, service):
        service.register.side_effect = IdentityNotResolvable("rejected")

        first = client.post("/api/identity/register", json={"phone": "9876543210", "name": "Meera"})
        second = client.post("/api/identity/register", json={"phone": "9876543210", "name": "Meera"})

        assert first.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert second.status_code == status.HTTP_429_TOO_MANY_REQUESTS

    def test_register_invalid_phone(self, client, service):
        response = client.post("/api/identity/register", json={"phone": "12345", "name": "Meera"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        service.register.assert_not_awaited()


class TestInternalAuth:

    @pytest.fixture(autouse=True)
    def internal_key(self, monkeypatch):
        monkeypatch.setenv("INTERNAL_API_KEY", "k" * 40)
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()

    def test_missing_key_is_401(self, service):
        client = TestClient(build_app(service))
        response = client.get("/api/identity/duplicates")
        assert response.status_code == 401

    def test_wrong_key_is_401(self, service):
        client = TestClient(build_app(service))
        response = client.get("/api/identity/duplicates", headers={"X-Internal-Api-Key": "wrong"})
        assert response.status_code == 401

    def test_valid_key_is_accepted(self, service):
        service.find_duplicates.return_value = []
        client = TestClient(build_app(service))

        response = client.get(
            "/api/identity/duplicates",
            headers={"X-Internal-Api-Key": "k" * 40, "X-Service-Name": "address-service"}
        )

        assert response.status_code == 200
        assert response.json() == {"duplicates": [], "count": 0}
