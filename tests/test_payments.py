"""Tests for the PayHere gateway adapter."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from order_engine import compensation, config, crud, customers, models, payments, schemas
from order_engine.enums import CompensationStatus, OrderStatus, PaymentStatus
from order_engine.errors import NotFoundError, SignatureError


def order_state(db, order_number):
    db.expire_all()
    order = crud.get_order_by_number(db, order_number)
    return order.order_status, order.payment_status


class TestStatusMapping:
    @pytest.mark.parametrize("code, expected", [
        ("2", (PaymentStatus.PAID, OrderStatus.CONFIRMED)),
        ("0", (PaymentStatus.PENDING, None)),
        ("-1", (PaymentStatus.FAILED, OrderStatus.CANCELLED)),
        ("-2", (PaymentStatus.FAILED, None)),
        ("-3", (PaymentStatus.REFUNDED, None)),
        ("7", (PaymentStatus.FAILED, None)),
        ("", (PaymentStatus.FAILED, None)),
    ])
    def test_map_status_code(self, code, expected):
        assert payments.map_status_code(code) == expected

    def test_card_last4(self):
        assert payments.card_last4("************1292") == "1292"
        assert payments.card_last4("4916 2170 0000 1292") == "1292"
        assert payments.card_last4("12") is None
        assert payments.card_last4(None) is None


class TestNotifyEndpoint:
    def test_successful_payment(self, client, db, place_order, signed_notification):
        order = place_order()
        form = signed_notification(order["orderNumber"], "2500.00")

        response = client.post("/payments/notify", data=form)

        assert response.status_code == 200
        assert response.text == "OK"
        assert order_state(db, order["orderNumber"]) == (OrderStatus.CONFIRMED, PaymentStatus.PAID)

        stored = crud.get_order_by_number(db, order["orderNumber"])
        assert stored.gateway_payment_id == "320025071"
        assert stored.gateway_status_code == "2"
        assert stored.card_last4 == "1292"
        assert stored.gateway_method == "VISA"

        customer = customers.get_customer_by_email(db, "jane@example.com")
        assert customer.total_orders == 1
        assert customer.total_spent == Decimal("2500")
        assert customer.last_order_date is not None

    def test_mutated_amount_rejected(self, client, db, place_order, signed_notification):
        order = place_order()
        form = signed_notification(order["orderNumber"], "2500.00")
        form["payhere_amount"] = "2.00"

        response = client.post("/payments/notify", data=form)

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Invalid signature"}
        assert order_state(db, order["orderNumber"]) == (OrderStatus.PENDING, PaymentStatus.PENDING)

    def test_wrong_merchant_rejected(self, client, place_order, signed_notification):
        order = place_order()
        form = signed_notification(order["orderNumber"], "2500.00", merchant_id="9999999")
        response = client.post("/payments/notify", data=form)
        assert response.status_code == 400

    def test_wrong_secret_rejected(self, client, place_order, signed_notification):
        order = place_order()
        form = signed_notification(order["orderNumber"], "2500.00", secret="guessed")
        response = client.post("/payments/notify", data=form)
        assert response.status_code == 400

    def test_unknown_order(self, client, catalog, signed_notification):
        form = signed_notification("RS-20250101-ZZZZZ", "100.00")
        response = client.post("/payments/notify", data=form)
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Order not found"}

    def test_duplicate_delivery_is_idempotent(self, client, db, place_order, signed_notification):
        order = place_order()
        form = signed_notification(order["orderNumber"], "2500.00")

        first = client.post("/payments/notify", data=form)
        db.expire_all()
        after_first = crud.get_order_by_number(db, order["orderNumber"])
        state_after_first = (after_first.order_status, after_first.payment_status,
                             after_first.gateway_payment_id, after_first.version)

        second = client.post("/payments/notify", data=form)
        db.expire_all()
        after_second = crud.get_order_by_number(db, order["orderNumber"])

        assert first.text == second.text == "OK"
        assert (after_second.order_status, after_second.payment_status,
                after_second.gateway_payment_id, after_second.version) == state_after_first
        customer = customers.get_customer_by_email(db, "jane@example.com")
        assert customer.total_orders == 1
        assert customer.total_spent == Decimal("2500")

        events = [e.event_type for e in crud.get_order_timeline(db, after_second.id)]
        assert events == ["created", "payment_updated", "duplicate_notification"]

    def test_out_of_order_pending_after_paid(self, client, db, place_order, signed_notification):
        order = place_order()
        client.post("/payments/notify", data=signed_notification(order["orderNumber"], "2500.00"))

        late = signed_notification(order["orderNumber"], "2500.00", status_code="0", payment_id="320025070")
        response = client.post("/payments/notify", data=late)

        assert response.text == "OK"
        assert order_state(db, order["orderNumber"]) == (OrderStatus.CONFIRMED, PaymentStatus.PAID)

    def test_gateway_cancellation(self, client, db, place_order, signed_notification, catalog):
        order = place_order()
        form = signed_notification(order["orderNumber"], "2500.00", status_code="-1")

        response = client.post("/payments/notify", data=form)

        assert response.text == "OK"
        assert order_state(db, order["orderNumber"]) == (OrderStatus.CANCELLED, PaymentStatus.FAILED)
        # Gateway cancellations do not restore stock
        assert db.get(models.ProductVariant, catalog["tee_m"]).stock == 0

    def test_failed_then_paid(self, client, db, place_order, signed_notification):
        order = place_order()
        client.post("/payments/notify", data=signed_notification(
            order["orderNumber"], "2500.00", status_code="-2", payment_id="1"))
        assert order_state(db, order["orderNumber"]) == (OrderStatus.PENDING, PaymentStatus.FAILED)

        client.post("/payments/notify", data=signed_notification(
            order["orderNumber"], "2500.00", status_code="2", payment_id="2"))
        assert order_state(db, order["orderNumber"]) == (OrderStatus.CONFIRMED, PaymentStatus.PAID)

    def test_late_pending_after_failure_reopens_cancellation(self, client, db, place_order, signed_notification):
        order = place_order()
        client.post("/payments/notify", data=signed_notification(
            order["orderNumber"], "2500.00", status_code="-2", payment_id="1"))
        client.post("/payments/notify", data=signed_notification(
            order["orderNumber"], "2500.00", status_code="0", payment_id="2"))
        assert order_state(db, order["orderNumber"]) == (OrderStatus.PENDING, PaymentStatus.PENDING)

        response = client.patch(f"/orders/cancel/{order['orderNumber']}",
                                json={"action": "cancel", "customerId": order["customerId"]})
        assert response.status_code == 200
        assert response.json()["data"]["orderStatus"] == "cancelled"

    def test_stats_use_the_notified_amount(self, client, db, place_order, signed_notification):
        order = place_order()

        response = client.post("/payments/notify", data=signed_notification(order["orderNumber"], "2000.00"))

        assert response.text == "OK"
        assert order_state(db, order["orderNumber"]) == (OrderStatus.CONFIRMED, PaymentStatus.PAID)
        customer = customers.get_customer_by_email(db, "jane@example.com")
        assert customer.total_spent == Decimal("2000.00")

        stored = crud.get_order_by_number(db, order["orderNumber"])
        mismatch = [e for e in crud.get_order_timeline(db, stored.id) if e.event_type == "amount_mismatch"]
        assert len(mismatch) == 1
        assert mismatch[0].old_value == "2500.00 LKR"
        assert mismatch[0].new_value == "2000.00 LKR"

    def test_currency_mismatch_is_noted(self, client, db, place_order, signed_notification):
        order = place_order()
        client.post("/payments/notify", data=signed_notification(order["orderNumber"], "2500.00", currency="USD"))

        stored = crud.get_order_by_number(db, order["orderNumber"])
        events = [e.event_type for e in crud.get_order_timeline(db, stored.id)]
        assert events == ["created", "amount_mismatch", "payment_updated"]

    def test_matching_amount_has_no_mismatch_event(self, client, db, place_order, signed_notification):
        order = place_order()
        client.post("/payments/notify", data=signed_notification(order["orderNumber"], "2500"))

        stored = crud.get_order_by_number(db, order["orderNumber"])
        events = [e.event_type for e in crud.get_order_timeline(db, stored.id)]
        assert events == ["created", "payment_updated"]

    def test_ledger_write_failure_is_recovered_on_redelivery(
        self, client, db, place_order, signed_notification, monkeypatch
    ):
        order = place_order()
        form = signed_notification(order["orderNumber"], "2500.00")
        real_record = compensation._record
        calls = []

        def record_failing_once(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("INSERT INTO compensating_actions", {}, Exception("disk I/O error"))
            return real_record(*args, **kwargs)

        monkeypatch.setattr(compensation, "_record", record_failing_once)

        first = client.post("/payments/notify", data=form)

        assert first.status_code == 200
        assert first.text == "OK"
        assert order_state(db, order["orderNumber"]) == (OrderStatus.CONFIRMED, PaymentStatus.PAID)
        assert customers.get_customer_by_email(db, "jane@example.com").total_orders == 0
        assert compensation.get_action_by_key(db, payments.customer_stats_key(order["orderNumber"])) is None

        second = client.post("/payments/notify", data=form)

        assert second.text == "OK"
        db.expire_all()
        customer = customers.get_customer_by_email(db, "jane@example.com")
        assert customer.total_orders == 1
        assert customer.total_spent == Decimal("2500")
        entry = compensation.get_action_by_key(db, payments.customer_stats_key(order["orderNumber"]))
        assert entry.status == CompensationStatus.SUCCEEDED

        client.post("/payments/notify", data=form)
        db.expire_all()
        assert customers.get_customer_by_email(db, "jane@example.com").total_orders == 1

    def test_chargeback_after_paid(self, client, db, place_order, signed_notification):
        order = place_order()
        client.post("/payments/notify", data=signed_notification(order["orderNumber"], "2500.00"))
        client.post("/payments/notify", data=signed_notification(
            order["orderNumber"], "2500.00", status_code="-3", payment_id="320025072"))
        assert order_state(db, order["orderNumber"]) == (OrderStatus.CONFIRMED, PaymentStatus.REFUNDED)

    def test_unexpected_error_answers_error(self, client, place_order, signed_notification, monkeypatch):
        order = place_order()

        def boom(db, notification):
            raise RuntimeError("database went away")

        monkeypatch.setattr(payments, "process_notification", boom)
        response = client.post("/payments/notify", data=signed_notification(order["orderNumber"], "2500.00"))
        assert response.status_code == 500
        assert response.text == "ERROR"


class TestProcessNotification:
    def _notification(self, signed_notification, order_number, **kwargs):
        return schemas.PayHereNotification(**signed_notification(order_number, "2500.00", **kwargs))

    def test_missing_secret_rejects_everything(self, db, place_order, signed_notification, monkeypatch):
        order = place_order()
        monkeypatch.setattr(config, "PAYHERE_MERCHANT_SECRET", "")
        with pytest.raises(SignatureError):
            payments.process_notification(db, self._notification(signed_notification, order["orderNumber"]))

    def test_unknown_order_raises(self, db, catalog, signed_notification):
        with pytest.raises(NotFoundError):
            payments.process_notification(db, self._notification(signed_notification, "RS-00000000-NONE0"))

    def test_paid_on_cancelled_order_keeps_cancellation(self, db, client, place_order, signed_notification):
        order = place_order()
        client.patch(f"/orders/cancel/{order['orderNumber']}",
                     json={"action": "cancel", "customerId": order["customerId"]})

        result = payments.process_notification(db, self._notification(signed_notification, order["orderNumber"]))

        assert result["applied"] is True
        assert result["orderStatus"] == "cancelled"
        assert result["paymentStatus"] == "paid"

    def test_stats_failure_is_recorded_not_raised(self, db, place_order, signed_notification):
        order = place_order()
        db.query(models.Customer).update({models.Customer.email: "renamed@example.com"})
        db.commit()

        result = payments.process_notification(db, self._notification(signed_notification, order["orderNumber"]))

        assert result["paymentStatus"] == "paid"
        entry = compensation.get_action_by_key(db, payments.customer_stats_key(order["orderNumber"]))
        assert entry.status == CompensationStatus.FAILED
        assert "not found" in entry.last_error

    def test_stats_key_succeeds_once(self, db, place_order, signed_notification):
        order = place_order()
        payments.process_notification(db, self._notification(signed_notification, order["orderNumber"]))
        entry = compensation.get_action_by_key(db, payments.customer_stats_key(order["orderNumber"]))
        assert entry.status == CompensationStatus.SUCCEEDED

        compensation.retry_action(db, entry.id)

        customer = customers.get_customer_by_email(db, "jane@example.com")
        db.refresh(customer)
        assert customer.total_orders == 1
        assert entry.attempts == 1


class TestPaymentInitiation:
    def test_builds_signed_checkout_form(self, client, place_order):
        order = place_order()
        response = client.post("/payments/initiate", json={"orderNumber": order["orderNumber"]})

        assert response.status_code == 200
        data = response.json()["data"]
        form = data["paymentData"]
        assert data["checkoutUrl"] == config.PAYHERE_CHECKOUT_URLS["sandbox"]
        assert form["merchant_id"] == "1211149"
        assert form["order_id"] == order["orderNumber"]
        assert form["amount"] == "2500.00"
        assert form["first_name"] == "Jane"
        assert form["last_name"] == "Perera"
        assert form["items"] == "Classic Tee (2)"
        assert form["city"] == "Colombo"
        assert form["hash"] == payments.signature.checkout_hash(order["orderNumber"], "2500.00", "LKR")

    def test_refuses_paid_order(self, client, place_order, signed_notification):
        order = place_order()
        client.post("/payments/notify", data=signed_notification(order["orderNumber"], "2500.00"))
        response = client.post("/payments/initiate", json={"orderNumber": order["orderNumber"]})
        assert response.status_code == 400
        assert response.json()["error"] == "Order is already paid"

    def test_unknown_order(self, client, catalog):
        response = client.post("/payments/initiate", json={"orderNumber": "RS-20250101-NOPE1"})
        assert response.status_code == 404


class TestPaymentHelpers:
    def test_hash_endpoint(self, client):
        response = client.post("/payments/hash", json={"orderId": "RS-1", "amount": 1000, "currency": "LKR"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["amount"] == "1000.00"
        assert data["hash"] == payments.signature.checkout_hash("RS-1", "1000.00", "LKR")

    def test_status_endpoint(self, client, place_order, signed_notification):
        order = place_order()
        client.post("/payments/notify", data=signed_notification(order["orderNumber"], "2500.00"))
        response = client.get("/payments/status", params={"orderId": order["orderNumber"]})
        data = response.json()["data"]
        assert data["paymentStatus"] == "paid"
        assert data["orderStatus"] == "confirmed"
        assert data["paymentId"] == "320025071"
        assert data["paymentMethod"] == "VISA"

    def test_status_requires_order_id(self, client):
        response = client.get("/payments/status")
        assert response.status_code == 400
        assert response.json()["error"] == "Order ID is required"
