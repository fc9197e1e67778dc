"""
Shared fixtures: an in-memory MongoDB (mongomock) behind the real services.
"""

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from config import Settings
from database import ensure_indexes
from schemas import (
    Address,
    CategoryIn,
    CreateOrder,
    PaymentMethod,
    ProductIn,
    UserRegistration,
)

ADMIN_UID = "admin-uid"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(admin_uids=[ADMIN_UID])


@pytest.fixture
def app(db, settings):
    return main.create_app(settings, db)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
def catalog(services):
    return services.catalog


@pytest.fixture
def accounts(services):
    return services.accounts


@pytest.fixture
def cart(services):
    return services.cart


@pytest.fixture
def orders(services):
    return services.orders


# -----------------
# Builders
# -----------------

@pytest.fixture
def category(catalog):
    return catalog.create_category(CategoryIn(name="Laptops & Tablets", description="Portable computers"))


@pytest.fixture
def make_product(catalog, category):
    def _make(name="Product A", price=10.00, stock=5, **extra):
        data = {"name": name, "price": price, "stock_quantity": stock, "category_id": category.id, "sku": "SKU-" + name}
        data.update(extra)
        return catalog.create_product(ProductIn(**data))
    return _make


@pytest.fixture
def make_user(accounts):
    def _make(uid="user-1", email=None):
        return accounts.register(UserRegistration(
            firebase_uid=uid,
            first_name="Ada",
            last_name="Lovelace",
            email=email or f"{uid}@example.com",
        ))
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(ADMIN_UID)


def address(**overrides) -> Address:
    data = {"street": "1 Main St", "city": "Springfield", "state": "IL", "country": "US", "postal_code": "62701"}
    data.update(overrides)
    return Address(**data)


def checkout_details(**overrides) -> CreateOrder:
    data = {
        "payment_method": PaymentMethod.CREDIT_CARD,
        "shipping_address": address(),
        "billing_address": address(street="2 Side St"),
        "notes": "Leave at the door",
    }
    data.update(overrides)
    return CreateOrder(**data)


def product_stock(catalog, product_id):
    return catalog.find_product(product_id)["stock_quantity"]


def product_status(catalog, product_id):
    return catalog.find_product(product_id)["status"]
