"""
Tests for the FastAPI application: health endpoints, request correlation and
the exception handlers.
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import status
from sqlalchemy.exc import DBAPIError

from src.core.config import get_settings
from src.core.security import PrincipalRole
from src.database.connection import close_database_connections
from src.main import ERROR_STATUS_CODES


# ============================================================================
# Health Endpoints
# ============================================================================


class TestHealthEndpoints:
    async def test_health(self, client) -> None:
        response = await client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["environment"] == "test"

    async def test_liveness(self, client) -> None:
        response = await client.get("/live")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "alive"

    async def test_readiness_with_database(self, client) -> None:
        try:
            response = await client.get("/ready")
        finally:
            await close_database_connections()

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["database"] == "healthy"

    async def test_readiness_without_database(self, client) -> None:
        with patch("src.main.check_database_health", AsyncMock(return_value=False)):
            response = await client.get("/ready")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["dependencies_ready"] is False


# ============================================================================
# Request Correlation
# ============================================================================


class TestRequestId:
    async def test_incoming_request_id_is_echoed(self, client) -> None:
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    async def test_request_id_is_generated(self, client) -> None:
        response = await client.get("/health")

        assert response.headers["X-Request-ID"]

    async def test_error_body_carries_request_id(self, client, auth_headers, driver_id) -> None:
        response = await client.post(
            f"/api/v1/orders/{uuid.uuid4()}/accept",
            json={"driver_location": {"lat": 1.0, "lng": 1.0}},
            headers={
                **auth_headers(driver_id, PrincipalRole.DRIVER),
                "X-Request-ID": "req-404",
            },
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["request_id"] == "req-404"


# ============================================================================
# Exception Handlers
# ============================================================================


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        "code,expected",
        [
            ("not_found", 404),
            ("unauthorized", 403),
            ("location_required", 422),
            ("illegal_transition", 409),
            ("already_taken", 409),
            ("stale_state", 409),
        ],
    )
    def test_error_code_mapping(self, code, expected) -> None:
        assert ERROR_STATUS_CODES[code] == expected

    async def test_database_outage_is_retryable(self, client, auth_headers, customer_id) -> None:
        outage = DBAPIError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

        with patch(
            "src.services.orders.service.OrderService.get_order",
            AsyncMock(side_effect=outage),
        ):
            response = await client.get(
                f"/api/v1/orders/{uuid.uuid4()}",
                headers=auth_headers(customer_id, PrincipalRole.CUSTOMER),
            )

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        retry_after = get_settings().db_unavailable_retry_after_seconds
        assert response.headers["Retry-After"] == str(retry_after)
        assert response.json()["error"] == "database_unavailable"

    async def test_request_validation_error(self, client, auth_headers, customer_id) -> None:
        response = await client.get(
            "/api/v1/orders/not-a-uuid",
            headers=auth_headers(customer_id, PrincipalRole.CUSTOMER),
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["details"]
