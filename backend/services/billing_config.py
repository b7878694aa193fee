"""Billing configuration - Stripe keys, price resolution inputs and policy knobs.

All values come from the environment (loaded from backend/.env by database.py).
get_billing_config() re-reads the environment on every call so tests and
operators can change values without restarting the module.
"""
import os
import logging
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_FREE_LIFETIME_MESSAGE_LIMIT = 3
DEFAULT_GRACE_PERIOD_HOURS = 48
DEFAULT_IDEMPOTENCY_WINDOW_SECONDS = 300
DEFAULT_EVENT_CLAIM_TTL_SECONDS = 600


class BillingConfigError(Exception):
    """Required billing configuration is missing. Maps to HTTP 500."""


def _env(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using default %s", name, raw, default)
        return default


class BillingConfig(BaseModel):
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    price_lookup_key: Optional[str] = None
    price_id: Optional[str] = None
    app_url: Optional[str] = None
    checkout_page_url: str = "/billing/upgrade"
    manage_page_url: str = "/billing/manage"
    portal_return_path: str = "/settings/billing"
    free_lifetime_message_limit: int = DEFAULT_FREE_LIFETIME_MESSAGE_LIMIT
    grace_period_hours: int = DEFAULT_GRACE_PERIOD_HOURS
    idempotency_window_seconds: int = DEFAULT_IDEMPOTENCY_WINDOW_SECONDS
    event_claim_ttl_seconds: int = DEFAULT_EVENT_CLAIM_TTL_SECONDS

    @property
    def grace_period(self) -> timedelta:
        return timedelta(hours=self.grace_period_hours)

    @property
    def event_claim_ttl(self) -> timedelta:
        return timedelta(seconds=self.event_claim_ttl_seconds)

    def require_webhook_secret(self) -> str:
        if not self.stripe_webhook_secret:
            raise BillingConfigError("STRIPE_WEBHOOK_SECRET is not configured")
        return self.stripe_webhook_secret

    def require_price_source(self) -> None:
        """Fail before any Stripe call when neither a lookup key nor a price id is set."""
        if not self.price_lookup_key and not self.price_id:
            raise BillingConfigError("Missing STRIPE_PRICE_LOOKUP_KEY_PRO or STRIPE_PRICE_ID")


def get_billing_config() -> BillingConfig:
    return BillingConfig(
        stripe_secret_key=_env("STRIPE_SECRET_KEY") or _env("STRIPE_API_KEY") or "",
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET") or "",
        price_lookup_key=_env("STRIPE_PRICE_LOOKUP_KEY_PRO"),
        price_id=_env("STRIPE_PRICE_ID"),
        app_url=(_env("APP_URL") or "").rstrip("/") or None,
        checkout_page_url=_env("BILLING_CHECKOUT_URL") or "/billing/upgrade",
        manage_page_url=_env("BILLING_PORTAL_URL") or "/billing/manage",
        portal_return_path=_env("BILLING_PORTAL_RETURN_PATH") or "/settings/billing",
        free_lifetime_message_limit=_env_int("FREE_LIFETIME_MESSAGE_LIMIT", DEFAULT_FREE_LIFETIME_MESSAGE_LIMIT),
        grace_period_hours=_env_int("BILLING_GRACE_PERIOD_HOURS", DEFAULT_GRACE_PERIOD_HOURS),
        idempotency_window_seconds=_env_int("CHECKOUT_IDEMPOTENCY_WINDOW_SECONDS", DEFAULT_IDEMPOTENCY_WINDOW_SECONDS),
        event_claim_ttl_seconds=_env_int("STRIPE_EVENT_CLAIM_TTL_SECONDS", DEFAULT_EVENT_CLAIM_TTL_SECONDS),
    )
