"""
Test configuration and fixtures for Registrations Service.
Services run against an in-memory SQLite database; the distributed lock,
Redis publishing and configuration lookups are replaced with mocks.
"""

import json
import pytest
import httpx
import jwt
from types import SimpleNamespace
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from unittest.mock import AsyncMock, MagicMock, patch
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from app.db.database import DatabaseManager
from app.models.registration import (
    Base,
    Event,
    EventStatus,
    EventQuestion,
    PriceTier,
    TicketType,
)
from app.services.order_service import order_service
from app.services.payment_provider import JSAPI_ORDER_PATH, NATIVE_ORDER_PATH, PaymentProvider
from app.services.registration_service import registration_service

JWT_SECRET = "your-secret-key-change-in-production"
ORGANIZER_ID = 900
USER_ID = 42

ORDER_CONFIG = {
    "order_expire_minutes": 30,
    "max_order_quantity": 10,
    "lock_timeout_seconds": 30,
    "currency": "CNY",
}

PAYMENT_CONFIG = {
    "api_base_url": "https://pay.test",
    "app_id": "community-app",
    "merchant_id": "1900000109",
    "merchant_key": "test-merchant-key",
    "notify_url": "https://community.test/api/v1/payments/notify",
    "notify_secret": "test-notify-secret",
    "timeout_seconds": 5.0,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_token(user_id: int = USER_ID, role: str = "user", **claims) -> str:
    """Encode a bearer token the API accepts."""
    payload = {"user_id": user_id, "role": role, "exp": utcnow() + timedelta(hours=1)}
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: int = USER_ID, user_agent: str = "Mozilla/5.0", **claims) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, **claims)}", "User-Agent": user_agent}


@pytest.fixture
def test_db():
    """Database manager bound to a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    manager = DatabaseManager()
    manager.engine = engine
    manager.session_factory = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        expire_on_commit=False
    )
    manager._initialized = True

    with patch("app.services.order_service.db_manager", manager), \
            patch("app.services.registration_service.db_manager", manager), \
            patch("app.api.dependencies.db_manager", manager):
        yield manager

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def mock_lock():
    """Distributed lock factory that always acquires."""
    lock = MagicMock()
    lock.__aenter__ = AsyncMock(return_value=lock)
    lock.__aexit__ = AsyncMock(return_value=False)
    factory = MagicMock(return_value=lock)

    with patch("app.services.order_service.get_distributed_lock", factory), \
            patch("app.services.registration_service.get_distributed_lock", factory):
        yield factory


@pytest.fixture
def mock_publisher():
    """Order event publisher mock."""
    return AsyncMock()


def gateway_handler(requests: list):
    """
    Payment gateway double: records each order body and answers native
    orders with a code URL and in-app orders with a prepay id.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        if request.url.path == NATIVE_ORDER_PATH:
            return httpx.Response(200, json={"code_url": f"weixin://wxpay/bizpayurl?pr={body['out_trade_no']}"})
        if request.url.path == JSAPI_ORDER_PATH:
            return httpx.Response(200, json={"prepay_id": f"wx{body['out_trade_no']}"})
        return httpx.Response(404, json={"code": "NOT_FOUND"})

    return handler


@pytest.fixture
def provider():
    """Payment provider with test credentials, talking to the gateway double."""
    gateway_requests = []
    payment_provider = PaymentProvider(transport=httpx.MockTransport(gateway_handler(gateway_requests)))
    payment_provider.payment_config = dict(PAYMENT_CONFIG)
    payment_provider.gateway_requests = gateway_requests
    return payment_provider


@pytest.fixture
def services(test_db, mock_lock, mock_publisher, provider):
    """Order and registration services wired to the test database."""
    with patch.object(order_service, "order_config", dict(ORDER_CONFIG)), \
            patch.object(order_service, "event_publisher", mock_publisher), \
            patch.object(order_service, "payment_provider", provider), \
            patch.object(registration_service, "order_config", dict(ORDER_CONFIG)):
        yield SimpleNamespace(
            orders=order_service,
            registrations=registration_service,
            db=test_db,
            lock=mock_lock,
            publisher=mock_publisher,
            provider=provider,
        )


@pytest.fixture
def make_event(test_db):
    """
    Create a published event.

    Tickets are dicts of TicketType columns plus an optional `tiers` list of
    (quantity, price) pairs; questions are (text, required) pairs.
    """
    def _make(tickets=(), questions=(), **fields):
        now = utcnow()
        values = {
            "title": "Community Meetup",
            "organizer_id": ORGANIZER_ID,
            "status": EventStatus.PUBLISHED,
            "start_time": now + timedelta(days=7),
            "end_time": now + timedelta(days=7, hours=3),
        }
        values.update(fields)

        with test_db.get_session() as session:
            event = Event(**values)
            for position, (text, required) in enumerate(questions):
                event.questions.append(EventQuestion(question=text, required=required, position=position))
            for sort_order, ticket_spec in enumerate(tickets):
                ticket_spec = dict(ticket_spec)
                tiers = ticket_spec.pop("tiers", ())
                ticket_spec.setdefault("name", f"Ticket {sort_order + 1}")
                if ticket_spec.get("price") is not None:
                    ticket_spec["price"] = Decimal(str(ticket_spec["price"]))
                ticket = TicketType(sort_order=sort_order, **ticket_spec)
                for quantity, price in tiers:
                    ticket.price_tiers.append(PriceTier(quantity=quantity, price=Decimal(str(price))))
                event.ticket_types.append(ticket)
            session.add(event)
            session.flush()

            created = SimpleNamespace(
                id=event.id,
                ticket_ids=[ticket.id for ticket in event.ticket_types],
                question_ids=[question.id for question in event.questions],
            )
        return created

    return _make


@pytest.fixture
def client(services):
    """
    API test client. Lifespan is not run; the services fixture provides
    the database and mocks.
    """
    from app.main import app
    return TestClient(app)
