"""
Tests for the event and registration API endpoints.
Tests event lookup, direct registration, health, and the client against the live app.
"""

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from app.client.api_client import ApiError, RegistrationApiClient
from app.client.eligibility import RegistrationMessage, evaluate_eligibility
from app.models.registration import EventStatus, OrderStatus
from app.schemas.registration import OrderCreate, RegistrationCreate
from tests.conftest import auth_headers, make_token


class TestEventsAPI:
    """Test event facts and direct registration."""

    def test_get_event(self, client, make_event):
        event = make_event(tickets=[{"price": 0}, {"price": 50, "tiers": [(3, 120)]}],
                           questions=[("Why join?", True)], max_attendees=100)

        response = client.get(f"/api/v1/events/{event.id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["max_attendees"] == 100
        assert data["registration_count"] == 0
        assert [ticket["id"] for ticket in data["ticket_types"]] == event.ticket_ids
        assert data["ticket_types"][1]["price_tiers"][0]["quantity"] == 3
        assert data["questions"][0]["required"] is True

    def test_event_not_found(self, client, services):
        response = client.get("/api/v1/events/9999")

        assert response.status_code == 404
        assert response.json()["error_code"] == "EVENT_NOT_FOUND"

    def test_register_free(self, client, make_event):
        event = make_event()

        created = client.post(f"/api/v1/events/{event.id}/register", json={}, headers=auth_headers())
        mine = client.get(f"/api/v1/events/{event.id}/registration", headers=auth_headers())
        facts = client.get(f"/api/v1/events/{event.id}")

        assert created.status_code == 201
        assert created.json()["data"]["status"] == "approved"
        assert mine.json()["data"]["id"] == created.json()["data"]["id"]
        assert facts.json()["data"]["registration_count"] == 1

    def test_register_twice(self, client, make_event):
        event = make_event()
        client.post(f"/api/v1/events/{event.id}/register", json={}, headers=auth_headers())

        response = client.post(f"/api/v1/events/{event.id}/register", json={}, headers=auth_headers())

        assert response.status_code == 409
        assert response.json()["error_code"] == "ALREADY_REGISTERED"

    def test_no_registration(self, client, make_event):
        event = make_event()

        response = client.get(f"/api/v1/events/{event.id}/registration", headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["data"] is None

    def test_register_requires_auth(self, client, make_event):
        event = make_event()

        response = client.post(f"/api/v1/events/{event.id}/register", json={})

        assert response.status_code in (401, 403)

    def test_register_closed_event(self, client, make_event):
        event = make_event(status=EventStatus.DRAFT)

        response = client.post(f"/api/v1/events/{event.id}/register", json={}, headers=auth_headers())

        assert response.status_code == 400
        assert response.json()["error_code"] == "REGISTRATION_CLOSED"


class TestHealthAPI:
    """Test health endpoints."""

    def test_root_and_simple_health(self, client):
        assert client.get("/").json()["service"] == "Registrations Service"
        assert client.get("/health").json() == {"status": "healthy", "service": "registrations"}

    def test_detailed_health(self, client):
        with patch("app.api.dependencies.redis_manager") as redis_manager:
            redis_manager.health_check = AsyncMock(return_value=True)
            response = client.get("/api/v1/health")

        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "healthy"

    def test_redis_down(self, client):
        with patch("app.api.dependencies.redis_manager") as redis_manager:
            redis_manager.health_check = AsyncMock(side_effect=ConnectionError("refused"))
            response = client.get("/api/v1/health")

        assert response.json()["status"] == "unhealthy"
        assert response.json()["redis"] == "unhealthy"


class TestClientAgainstApp:
    """Drive the registration client against the running app."""

    @pytest.fixture
    def api_client(self, services):
        from app.main import app
        transport = httpx.ASGITransport(app=app)
        return RegistrationApiClient("http://testserver/api/v1", token=make_token(), transport=transport)

    @pytest.mark.asyncio
    async def test_order_round_trip(self, api_client, make_event):
        event = make_event(tickets=[{"price": 99}])

        async with api_client as api:
            facts = await api.get_event(event.id)
            eligibility = evaluate_eligibility(facts, facts.registration_count, viewer_id=42)
            order = await api.create_order(event.id, OrderCreate(ticket_type_id=event.ticket_ids[0]))
            pending = await api.get_my_registration(event.id)
            resumed = evaluate_eligibility(facts, facts.registration_count, viewer_id=42,
                                           existing_registration=pending)
            cancelled = await api.cancel_order(event.id, order.order_id)

        assert eligibility.can_register
        assert order.payment.code_url.startswith("weixin://")
        assert resumed.message == RegistrationMessage.PAYMENT_PENDING
        assert resumed.can_resume_payment
        assert cancelled.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_errors_surface_as_api_errors(self, api_client, make_event):
        event = make_event()

        async with api_client as api:
            await api.register(event.id, RegistrationCreate())
            with pytest.raises(ApiError) as exc_info:
                await api.register(event.id, RegistrationCreate())

        assert exc_info.value.status_code == 409
        assert exc_info.value.error_code == "ALREADY_REGISTERED"
