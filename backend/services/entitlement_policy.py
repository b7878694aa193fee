"""Entitlement Policy - pure decisions over Stripe subscription state.

No I/O. Every function takes `now` explicitly (defaulting to the current UTC
time) so webhook handlers, the checkout verifier and the limits endpoint all
evaluate the same instant the same way.

Policy (subject to product confirmation):
- ACTIVE, TRIALING -> entitled
- PAST_DUE -> entitled only until the latest period end + GRACE_PERIOD
- CANCELED, INCOMPLETE, INCOMPLETE_EXPIRED, UNPAID, PAUSED -> not entitled
- Only a newly ACTIVE subscription triggers duplicate cancellation; a trial
  may be abandoned, so TRIALING never does.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional

from models import SubscriptionStatus, UserTier

GRACE_PERIOD = timedelta(days=2)

ENTITLED_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
})
GRACE_STATUSES = frozenset({SubscriptionStatus.PAST_DUE.value})
DEDUPE_TRIGGER_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value})
# Siblings in these statuses are billed and get canceled as duplicates
LIVE_DUPLICATE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Mongo may hand back naive datetimes; they are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _status_value(status: Any) -> Optional[str]:
    if status is None:
        return None
    return getattr(status, "value", status)


def _finite_timestamp(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def get_subscription_period_end(subscription: Optional[Mapping[str, Any]]) -> Optional[datetime]:
    """Effective expiry: the latest `current_period_end` across line items.

    Items without a finite period end are skipped. When no item reports one,
    the subscription-level `current_period_end` is used (older Stripe API
    versions only set it there). Returns None when neither is present.
    """
    if not subscription:
        return None

    items = (subscription.get("items") or {}).get("data") or []
    latest: Optional[float] = None

    for item in items:
        period_end = _finite_timestamp(item.get("current_period_end"))
        if period_end is None:
            continue
        latest = period_end if latest is None else max(latest, period_end)

    if latest is None:
        latest = _finite_timestamp(subscription.get("current_period_end"))
    if latest is None:
        return None
    return datetime.fromtimestamp(latest, tz=timezone.utc)


def is_subscription_entitled(
    subscription: Optional[Mapping[str, Any]],
    now: Optional[datetime] = None,
    grace_period: timedelta = GRACE_PERIOD,
) -> bool:
    """Whether a Stripe subscription snapshot confers Pro access at `now`."""
    if not subscription:
        return False

    status = _status_value(subscription.get("status"))

    if status in ENTITLED_STATUSES:
        return True

    if status in GRACE_STATUSES:
        period_end = get_subscription_period_end(subscription)
        if period_end is None:
            return False
        return as_utc(now or _utcnow()) <= period_end + grace_period

    return False


def is_user_entitled(
    user: Optional[Mapping[str, Any]],
    now: Optional[datetime] = None,
    grace_period: timedelta = GRACE_PERIOD,
) -> bool:
    """Whether a stored user record confers Pro access at `now`.

    `lifetime_access` wins outright. Otherwise the record must be on the pro
    tier with a linked subscription, and `pro_expires_at` (when known) plus
    the grace period must not have passed. A missing expiry with a linked
    subscription means "entitled, expiry not yet known".
    """
    if not user:
        return False

    if user.get("lifetime_access"):
        return True

    if _status_value(user.get("tier")) != UserTier.PRO.value or not user.get("stripe_subscription_id"):
        return False

    expires_at = user.get("pro_expires_at")
    if expires_at is None:
        return True

    return as_utc(now or _utcnow()) <= as_utc(expires_at) + grace_period


def should_dedupe_on_status(status: Any) -> bool:
    return _status_value(status) in DEDUPE_TRIGGER_STATUSES


def is_live_duplicate_status(status: Any) -> bool:
    return _status_value(status) in LIVE_DUPLICATE_STATUSES


def select_preferred_subscription(
    subscriptions: Iterable[Mapping[str, Any]],
    now: Optional[datetime] = None,
    grace_period: timedelta = GRACE_PERIOD,
) -> Optional[Mapping[str, Any]]:
    """Pick the subscription a customer should be entitled by, if any.

    Only entitled subscriptions are candidates. ACTIVE beats any other status;
    among equals the latest effective expiry wins (unknown expiry ranks last).
    """
    now = as_utc(now or _utcnow())
    candidates = [
        sub for sub in subscriptions
        if is_subscription_entitled(sub, now=now, grace_period=grace_period)
    ]
    if not candidates:
        return None

    def rank(sub):
        period_end = get_subscription_period_end(sub)
        return (
            _status_value(sub.get("status")) == SubscriptionStatus.ACTIVE.value,
            period_end is not None,
            period_end or now,
        )

    return max(candidates, key=rank)
