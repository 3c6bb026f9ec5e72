"""
Tests for the order API endpoints.
Tests order creation, resume, polling, cancellation, settlement and invites.
"""

import asyncio

from tests.conftest import ORGANIZER_ID, USER_ID, auth_headers

IN_APP_AGENT = "Mozilla/5.0 (iPhone) MicroMessenger/8.0.40"


def create_order(client, event, headers=None, **body):
    payload = {"ticket_type_id": event.ticket_ids[0]}
    payload.update(body)
    return client.post(f"/api/v1/events/{event.id}/orders", json=payload, headers=headers or auth_headers())


class TestOrdersAuth:
    """Test authentication on order endpoints."""

    def test_unauthorized_order_creation(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])

        response = client.post(f"/api/v1/events/{event.id}/orders", json={"ticket_type_id": event.ticket_ids[0]})

        assert response.status_code in (401, 403)

    def test_invalid_token(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])

        response = client.get(f"/api/v1/events/{event.id}/orders/pending",
                              headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "HTTP_ERROR"


class TestOrdersAPI:
    """Test the order lifecycle over HTTP."""

    def test_create_and_resume(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])

        first = create_order(client, event)
        second = create_order(client, event)

        assert first.status_code == 201
        body = first.json()
        assert body["success"] is True
        assert body["data"]["payment"]["kind"] == "code"
        assert second.json()["data"]["order_id"] == body["data"]["order_id"]
        assert second.json()["data"]["is_existing"] is True

    def test_pending_lookup(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])

        empty = client.get(f"/api/v1/events/{event.id}/orders/pending", headers=auth_headers())
        created = create_order(client, event).json()["data"]
        pending = client.get(f"/api/v1/events/{event.id}/orders/pending", headers=auth_headers())

        assert empty.status_code == 200
        assert empty.json()["data"] is None
        assert pending.json()["data"]["order_id"] == created["order_id"]

    def test_in_app_browser_requires_identity(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])

        response = create_order(client, event, headers=auth_headers(user_agent=IN_APP_AGENT))

        assert response.status_code == 400
        assert response.json()["error_code"] == "PAYMENT_IDENTITY_REQUIRED"

    def test_in_app_browser_with_identity(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])

        response = create_order(client, event,
                                headers=auth_headers(user_agent=IN_APP_AGENT, payment_openid="openid-1"))

        assert response.status_code == 201
        assert response.json()["data"]["payment"]["kind"] == "jsapi"

    def test_domain_error_shape(self, client, make_event):
        event = make_event(tickets=[{"price": 99, "max_quantity": 0}])

        response = create_order(client, event)

        assert response.status_code == 409
        body = response.json()
        assert body["error_code"] == "SOLD_OUT"
        assert body["error_message"]
        assert "timestamp" in body

    def test_quantity_validated(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])

        response = create_order(client, event, quantity=11)

        assert response.status_code == 422

    def test_status_cancel_and_repeat(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])
        order_id = create_order(client, event).json()["data"]["order_id"]
        base = f"/api/v1/events/{event.id}/orders/{order_id}"

        status = client.get(base, headers=auth_headers())
        cancelled = client.post(f"{base}/cancel", headers=auth_headers())
        repeated = client.post(f"{base}/cancel", headers=auth_headers())

        assert status.json()["data"]["status"] == "pending"
        assert status.json()["data"]["registration"]["status"] == "pending_payment"
        assert cancelled.json()["data"]["status"] == "cancelled"
        assert repeated.status_code == 200
        assert repeated.json()["data"]["already_processed"] is True

    def test_other_user_cannot_read_order(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])
        order_id = create_order(client, event).json()["data"]["order_id"]

        response = client.get(f"/api/v1/events/{event.id}/orders/{order_id}", headers=auth_headers(user_id=99))

        assert response.status_code == 404
        assert response.json()["error_code"] == "ORDER_NOT_FOUND"

    def test_manual_settlement_and_invites(self, client, make_event):
        event = make_event(tickets=[{"price": 99, "tiers": [(2, 180)]}])
        order_id = create_order(client, event, quantity=2).json()["data"]["order_id"]
        base = f"/api/v1/events/{event.id}/orders/{order_id}"

        forbidden = client.post(f"{base}/mark-paid", headers=auth_headers())
        settled = client.post(f"{base}/mark-paid", headers=auth_headers(user_id=ORGANIZER_ID))
        status = client.get(base, headers=auth_headers())
        invites = client.get(f"{base}/invites", headers=auth_headers())

        assert forbidden.status_code == 403
        assert settled.json()["data"]["status"] == "paid"
        assert status.json()["data"]["registration"]["status"] == "approved"
        assert len(invites.json()["data"]) == 1

        code = invites.json()["data"][0]["code"]
        redeemed = client.post(f"/api/v1/events/{event.id}/orders/invites/{code}/redeem", json={},
                               headers=auth_headers(user_id=USER_ID + 1))
        assert redeemed.status_code == 200
        assert redeemed.json()["data"]["user_id"] == USER_ID + 1

    def test_admin_can_settle(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])
        order_id = create_order(client, event).json()["data"]["order_id"]

        response = client.post(f"/api/v1/events/{event.id}/orders/{order_id}/mark-paid",
                               headers=auth_headers(user_id=1, role="admin"))

        assert response.json()["data"]["status"] == "paid"


class TestPaymentNotifications:
    """Test the gateway callback endpoint."""

    def test_signed_notification(self, client, make_event, services):
        event = make_event(tickets=[{"price": 99}])
        order = create_order(client, event).json()["data"]
        signature = asyncio.run(services.provider.sign_notification(order["order_no"], "TX-1"))
        body = {"order_no": order["order_no"], "transaction_id": "TX-1", "signature": signature}

        first = client.post("/api/v1/payments/notify", json=body)
        second = client.post("/api/v1/payments/notify", json=body)

        assert first.json()["data"]["status"] == "paid"
        assert first.json()["data"]["already_processed"] is False
        assert second.json()["data"]["already_processed"] is True

    def test_forged_notification(self, client, make_event):
        event = make_event(tickets=[{"price": 99}])
        order = create_order(client, event).json()["data"]

        response = client.post("/api/v1/payments/notify",
                               json={"order_no": order["order_no"], "transaction_id": "TX-1", "signature": "x"})

        assert response.status_code == 403
        assert response.json()["error_code"] == "PERMISSION_DENIED"
