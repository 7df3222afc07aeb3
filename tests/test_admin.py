"""Tests for the staff endpoints."""

import pytest
from jose import jwt

from order_engine import auth, config


class TestAuth:
    def test_missing_token(self, client):
        response = client.get("/admin/orders")
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client):
        response = client.get("/admin/orders", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_non_admin(self, client, staff_headers):
        response = client.get("/admin/orders", headers=staff_headers)
        assert response.status_code == 403

    def test_token_missing_claims(self):
        token = jwt.encode({"sub": "1"}, config.SECRET_KEY, algorithm=config.ALGORITHM)
        with pytest.raises(ValueError):
            auth.decode_token(token)

    def test_actor(self):
        user = auth.CurrentUser(id=1, email="ops@example.com", role="admin")
        assert user.actor == "staff:ops@example.com"


class TestAdminOrders:
    def test_list_orders(self, client, place_order, admin_headers):
        order = place_order()
        response = client.get("/admin/orders", headers=admin_headers)

        assert response.status_code == 200
        orders = response.json()["data"]
        assert len(orders) == 1
        assert orders[0]["orderNumber"] == order["orderNumber"]
        assert orders[0]["customerEmail"] == "jane@example.com"
        assert orders[0]["orderItems"][0]["productSku"] == "TEE-M-BLK"

    def test_filter_by_status(self, client, place_order, admin_headers):
        place_order()
        response = client.get("/admin/orders", params={"orderStatus": "confirmed"}, headers=admin_headers)
        assert response.json()["data"] == []

    def test_fulfilment_transitions(self, client, place_order, admin_headers):
        order = place_order()
        url = f"/admin/orders/{order['orderNumber']}/status"

        confirmed = client.patch(url, json={"orderStatus": "confirmed"}, headers=admin_headers)
        skipped = client.patch(url, json={"orderStatus": "delivered"}, headers=admin_headers)
        shipped = client.patch(url, json={"orderStatus": "shipped"}, headers=admin_headers)

        assert confirmed.status_code == 200
        assert confirmed.json()["data"] == {
            "orderNumber": order["orderNumber"], "oldStatus": "pending", "orderStatus": "confirmed",
        }
        assert skipped.status_code == 400
        assert shipped.json()["data"]["orderStatus"] == "shipped"

    def test_unknown_status_value(self, client, place_order, admin_headers):
        order = place_order()
        response = client.patch(f"/admin/orders/{order['orderNumber']}/status",
                                json={"orderStatus": "lost"}, headers=admin_headers)
        assert response.status_code == 400

    def test_timeline(self, client, place_order, admin_headers):
        order = place_order()
        client.patch(f"/admin/orders/{order['orderNumber']}/status",
                     json={"orderStatus": "confirmed"}, headers=admin_headers)

        response = client.get(f"/admin/orders/{order['orderNumber']}/timeline", headers=admin_headers)

        events = response.json()["data"]
        assert [e["event_type"] for e in events] == ["created", "status_changed"]
        assert events[1]["actor"] == "staff:admin@example.com"
        assert events[1]["old_value"] == "pending"
        assert events[1]["new_value"] == "confirmed"

    def test_timeline_unknown_order(self, client, catalog, admin_headers):
        response = client.get("/admin/orders/RS-20250101-NOPE1/timeline", headers=admin_headers)
        assert response.status_code == 404


class TestAdminCompensations:
    def test_list_and_retry_failed_restoration(self, client, db, order_payload, catalog, admin_headers):
        items = [{"product": {"id": catalog["tee"], "sku": "TEE", "title": "Classic Tee"},
                  "variant": {"sku": "TEE-XS-BLK"}, "quantity": 1, "price": 1000}]
        order = client.post("/orders", json=order_payload(items=items)).json()["data"]
        client.patch(f"/orders/cancel/{order['orderNumber']}",
                     json={"action": "cancel", "customerId": order["customerId"]})

        listed = client.get("/admin/compensations", params={"status": "failed"}, headers=admin_headers)
        entries = listed.json()["data"]
        assert len(entries) == 1
        assert entries[0]["kind"] == "inventory_restore"
        assert entries[0]["order_number"] == order["orderNumber"]
        assert "TEE-XS-BLK" in entries[0]["last_error"]

        retried = client.post(f"/admin/compensations/{entries[0]['id']}/retry", headers=admin_headers)
        assert retried.status_code == 200
        assert retried.json()["data"]["status"] == "failed"
        assert retried.json()["data"]["attempts"] == 2

    def test_retry_unknown(self, client, admin_headers):
        response = client.post("/admin/compensations/999/retry", headers=admin_headers)
        assert response.status_code == 404
