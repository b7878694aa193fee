"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB connect) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
# Deterministic billing configuration for every test (no real Stripe calls are made).
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("STRIPE_PRICE_ID", "price_pro_test")
os.environ.setdefault("APP_URL", "https://chat.example.com")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

from unittest.mock import patch

import pytest

from fastapi.testclient import TestClient
from auth import create_access_token
from database import database
from server import app
from services.billing_config import BillingConfig
from services.stripe_gateway import get_stripe_gateway

from fakes import FakeStripeGateway, _InMemoryStore


@pytest.fixture
def store():
    """In-memory database patched in as database.get_db() for every service."""
    memory = _InMemoryStore()
    with patch.object(database, "get_db", side_effect=memory.get_db):
        yield memory


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def billing_config():
    return BillingConfig(
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test",
        price_id="price_pro_test",
        app_url="https://chat.example.com",
    )


@pytest.fixture
def client(store, gateway):
    """TestClient for server:app with the fake gateway and in-memory database."""
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user_id: str, user_type: str = "regular", email: str = None) -> dict:
    token = create_access_token({"id": user_id, "type": user_type, "email": email or f"{user_id}@example.com"})
    return {"Authorization": f"Bearer {token}"}
