"""Pytest fixtures for the order engine tests."""

import os

# Settings are read at import time; configure before the app is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PAYHERE_MERCHANT_ID"] = "1211149"
os.environ["PAYHERE_MERCHANT_SECRET"] = "test-merchant-secret"
os.environ["WEBHOOK_URLS"] = ""

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from order_engine import config, models, signature
from order_engine.database import get_db
from order_engine.enums import ProductStatus
from order_engine.main import app

MERCHANT_ID = "1211149"
MERCHANT_SECRET = "test-merchant-secret"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    """Fresh schema and session for each test."""
    models.Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        models.Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    """Test client whose requests each get their own session on the test database."""
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def catalog(db):
    """
    Seed the catalog:

    - ``tee``: out of stock, two variants (M/Black, L/Black) with zero stock
    - ``cap``: active, no variants, base stock 3
    - ``poster``: draft, no variants, no stock
    """
    tee = models.Product(name="Classic Tee", sku="TEE", status=ProductStatus.OUT_OF_STOCK, stock=0)
    tee.variants = [
        models.ProductVariant(name="M / Black", sku="TEE-M-BLK", size="M", color="Black",
                              price=1000, stock=0),
        models.ProductVariant(name="L / Black", sku="TEE-L-BLK", size="L", color="Black",
                              price=1000, stock=0),
    ]
    cap = models.Product(name="Logo Cap", sku="CAP", status=ProductStatus.ACTIVE, stock=3)
    poster = models.Product(name="Poster", sku="POSTER", status=ProductStatus.DRAFT, stock=0)
    db.add_all([tee, cap, poster])
    db.commit()
    return {
        "tee": tee.id,
        "tee_m": tee.variants[0].id,
        "tee_l": tee.variants[1].id,
        "cap": cap.id,
        "poster": poster.id,
    }


@pytest.fixture
def order_payload(catalog):
    """Builder for a valid checkout request: two Tee M/Black at 1000, shipping 500."""
    def build(email="jane@example.com", quantity=2, price=1000, shipping=500, items=None):
        if items is None:
            items = [{
                "product": {"id": catalog["tee"], "sku": "TEE", "title": "Classic Tee"},
                "variant": {"id": catalog["tee_m"], "sku": "TEE-M-BLK", "name": "M / Black",
                            "size": "M", "color": "Black"},
                "quantity": quantity,
                "price": price,
            }]
        subtotal = sum(item["quantity"] * item.get("price", 0) for item in items)
        return {
            "customer": {
                "fullName": "Jane Perera",
                "email": email,
                "phone": "0771234567",
                "address": {
                    "street": "12 Galle Road",
                    "city": "Colombo",
                    "postalCode": "00300",
                    "province": "Western",
                },
            },
            "items": items,
            "pricing": {
                "subtotal": subtotal,
                "shipping": shipping,
                "discount": 0,
                "total": subtotal + shipping,
            },
        }
    return build


@pytest.fixture
def place_order(client, order_payload):
    """Create an order through the API and return the response data."""
    def place(**kwargs):
        response = client.post("/orders", json=order_payload(**kwargs))
        assert response.status_code in (200, 201), response.text
        return response.json()["data"]
    return place


@pytest.fixture
def signed_notification():
    """Builder for PayHere notify form data with a valid ``md5sig``."""
    def build(order_number, amount, status_code="2", payment_id="320025071",
              currency="LKR", merchant_id=MERCHANT_ID, secret=MERCHANT_SECRET, **extra):
        form = {
            "merchant_id": merchant_id,
            "order_id": order_number,
            "payment_id": payment_id,
            "payhere_amount": amount,
            "payhere_currency": currency,
            "status_code": status_code,
            "md5sig": signature.notification_signature(
                merchant_id, order_number, amount, currency, status_code, merchant_secret=secret
            ),
            "method": "VISA",
            "status_message": "Successfully completed the payment.",
            "card_holder_name": "Jane Perera",
            "card_no": "************1292",
            "card_expiry": "12/27",
        }
        form.update(extra)
        return form
    return build


def make_token(role="admin", user_id=1, email="admin@example.com"):
    return jwt.encode(
        {"sub": str(user_id), "email": email, "role": role},
        config.SECRET_KEY,
        algorithm=config.ALGORITHM,
    )


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def staff_headers():
    return {"Authorization": f"Bearer {make_token(role='user', user_id=2, email='staff@example.com')}"}


@pytest.fixture
def session_factory(db):
    """Factory for additional sessions on the test database (e.g. a concurrent writer)."""
    return TestingSessionLocal
