"""
Integration tests for the HTTP API.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from conftest import ORANGE_BASE_URL
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from memberpay.api.main import create_app
from memberpay.database.connection import build_session_factory
from memberpay.monitoring.health import HealthCheck


@pytest_asyncio.fixture
async def client(
    test_settings, orchestrator, session_factory, gateways
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(test_settings)
    app.state.orchestrator = orchestrator
    app.state.health_check = HealthCheck(session_factory, gateways)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestPaymentEndpoints:
    """Payment API."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_payment(self, client: AsyncClient, sample_payment_data: dict) -> None:
        response = await client.post("/payments", json=sample_payment_data)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["redirect_url"] == "https://webpayment.orange.test/REF123"
        assert data["attempt_id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_phone(self, client: AsyncClient, sample_payment_data: dict) -> None:
        sample_payment_data["payer_contact"] = "call me"

        response = await client.post("/payments", json=sample_payment_data)

        assert response.status_code == 400
        assert response.json()["detail"] == {
            "error": "invalid_phone",
            "message": "Invalid phone number",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_schema_violation(self, client: AsyncClient, sample_payment_data: dict) -> None:
        sample_payment_data["amount"] = "0"

        response = await client.post("/payments", json=sample_payment_data)

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_outage_message(
        self, client: AsyncClient, provider, sample_payment_data: dict
    ) -> None:
        provider.json("POST", f"{ORANGE_BASE_URL}/webpayment", {}, status_code=502)

        response = await client.post("/payments", json=sample_payment_data)

        assert response.status_code == 503
        detail = response.json()["detail"]
        assert detail["error"] == "gateway_unavailable"
        assert "try again later" in detail["message"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_purchase(
        self, client: AsyncClient, provider, sample_payment_data: dict
    ) -> None:
        first = await client.post("/payments", json=sample_payment_data)
        await client.post(
            "/webhooks/orange_money",
            json={
                "status": "SUCCESS",
                "order_id": first.json()["attempt_id"],
                "txnid": "REF123",
                "amount": "10000",
            },
        )

        second = await client.post("/payments", json=sample_payment_data)

        assert second.status_code == 409
        assert second.json()["detail"]["error"] == "duplicate_purchase"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resubmitted_attempt_id(
        self, client: AsyncClient, sample_payment_data: dict
    ) -> None:
        sample_payment_data["attempt_id"] = "checkout-77"
        first = await client.post("/payments", json=sample_payment_data)
        again = await client.post("/payments", json=sample_payment_data)
        sample_payment_data["amount"] = "25000"
        other = await client.post("/payments", json=sample_payment_data)

        assert first.status_code == again.status_code == 201
        assert again.json() == first.json()
        assert other.status_code == 409
        assert other.json()["detail"]["error"] == "attempt_id_in_use"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_payment_status(
        self, client: AsyncClient, provider, sample_payment_data: dict
    ) -> None:
        provider.json("GET", f"{ORANGE_BASE_URL}/payment/REF123", {"status": "PENDING"})
        created = await client.post("/payments", json=sample_payment_data)
        attempt_id = created.json()["attempt_id"]

        response = await client.get(f"/payments/{attempt_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["attempt_id"] == attempt_id
        assert data["status"] == "pending"
        assert data["gateway"] == "orange_money"
        assert Decimal(str(data["amount"])) == Decimal("10000")
        assert data["payment_id"] is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment(self, client: AsyncClient) -> None:
        response = await client.get("/payments/does-not-exist")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "attempt_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_payment(self, client: AsyncClient, sample_payment_data: dict) -> None:
        created = await client.post("/payments", json=sample_payment_data)
        attempt_id = created.json()["attempt_id"]

        cancelled = await client.post(f"/payments/{attempt_id}/cancel")
        again = await client.post(f"/payments/{attempt_id}/cancel")

        assert cancelled.status_code == 200
        assert cancelled.json()["failure_reason"] == "cancelled"
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "attempt_already_final"


class TestWebhookEndpoint:
    """Gateway notifications over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_json_notification(
        self, client: AsyncClient, sample_payment_data: dict
    ) -> None:
        created = await client.post("/payments", json=sample_payment_data)
        attempt_id = created.json()["attempt_id"]
        notification = {
            "status": "SUCCESS",
            "order_id": attempt_id,
            "txnid": "REF123",
            "amount": "10000",
        }

        response = await client.post("/webhooks/orange_money", json=notification)
        replay = await client.post("/webhooks/orange_money", json=notification)

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "result": "completed",
            "attempt_id": attempt_id,
        }
        assert replay.json()["result"] == "duplicate"

        status = await client.get(f"/payments/{attempt_id}")
        assert status.json()["status"] == "completed"
        assert status.json()["payment_id"] is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_form_encoded_notification(
        self, client: AsyncClient, sample_payment_data: dict
    ) -> None:
        sample_payment_data.update(gateway="sama_money", payer_contact="+22370000000")
        created = await client.post("/payments", json=sample_payment_data)
        attempt_id = created.json()["attempt_id"]

        response = await client.post(
            "/webhooks/sama_money",
            data={"idCommande": attempt_id, "status": "1", "montant": "10000"},
        )

        assert response.status_code == 200
        assert response.json()["result"] == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_mismatch_acknowledged(
        self, client: AsyncClient, sample_payment_data: dict
    ) -> None:
        created = await client.post("/payments", json=sample_payment_data)
        attempt_id = created.json()["attempt_id"]

        response = await client.post(
            "/webhooks/orange_money",
            json={"status": "SUCCESS", "order_id": attempt_id, "amount": "9500"},
        )

        assert response.status_code == 200
        assert response.json()["result"] == "amount_mismatch"
        status = await client.get(f"/payments/{attempt_id}")
        assert status.json()["status"] == "failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_notification(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/orange_money", json={"status": "SUCCESS"})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_callback"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_gateway(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/paypal", json={"status": "SUCCESS"})

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_object_json(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/orange_money", json=["SUCCESS"])

        assert response.status_code == 400


class TestMonitoringEndpoints:
    """Health, metrics and service info."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["gateways"]["enabled"] == [
            "cinetpay",
            "orange_money",
            "sama_money",
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: AsyncClient) -> None:
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")

        assert live.json()["status"] == "alive"
        assert ready.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_readiness_fails_without_database(self, tmp_path, gateways) -> None:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nowhere.db'}", poolclass=NullPool
        )
        health = HealthCheck(build_session_factory(engine), gateways)

        result = await health.readiness()

        assert result["status"] == "unhealthy"
        assert result["checks"]["database"]["status"] == "unhealthy"
        await engine.dispose()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(
        self, client: AsyncClient, sample_payment_data: dict
    ) -> None:
        await client.post("/payments", json=sample_payment_data)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "payment_initiations_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/", headers={"X-Request-ID": "req-42"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["service"] == "memberpay-test"
