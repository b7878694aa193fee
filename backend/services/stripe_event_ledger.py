"""Stripe event ledger - exactly-once claim of webhook events.

One row per Stripe event id in `stripe_events` (unique index on event_id).
A claim is an atomic insert; the unique index makes concurrent deliveries of
the same event race safely. A duplicate is skipped unless the earlier attempt
FAILED or its claim is older than the claim TTL (the worker died mid-flight),
in which case a single find_one_and_update re-claims it. PROCESSED rows are
never re-claimed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import StripeEventRecord, StripeEventStatus
from services.billing_config import DEFAULT_EVENT_CLAIM_TTL_SECONDS

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class ClaimResult:
    should_process: bool
    reclaimed: bool = False


class StripeEventLedger:
    def __init__(self, claim_ttl: timedelta = timedelta(seconds=DEFAULT_EVENT_CLAIM_TTL_SECONDS)):
        self.claim_ttl = claim_ttl

    async def claim(
        self,
        event_id: str,
        event_type: Optional[str] = None,
        now: Optional[datetime] = None,
        claim_ttl: Optional[timedelta] = None,
    ) -> ClaimResult:
        """Claim an event for processing. should_process is False for replays."""
        db = database.get_db()
        now = now or datetime.now(timezone.utc)
        claim_ttl = claim_ttl or self.claim_ttl

        record = StripeEventRecord(event_id=event_id, event_type=event_type, claimed_at=now)
        try:
            await db.stripe_events.insert_one(record.model_dump())
            return ClaimResult(should_process=True)
        except DuplicateKeyError:
            pass

        reclaimed = await db.stripe_events.find_one_and_update(
            {
                "event_id": event_id,
                "$or": [
                    {"status": StripeEventStatus.FAILED.value},
                    {
                        "status": StripeEventStatus.CLAIMED.value,
                        "claimed_at": {"$lt": now - claim_ttl},
                    },
                ],
            },
            {
                "$set": {
                    "status": StripeEventStatus.CLAIMED.value,
                    "claimed_at": now,
                },
                "$inc": {"attempts": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if reclaimed:
            logger.info(
                "WEBHOOK_EVENT_RECLAIMED event_id=%s attempts=%s",
                event_id, reclaimed.get("attempts"),
            )
            return ClaimResult(should_process=True, reclaimed=True)

        return ClaimResult(should_process=False)

    async def mark_processed(self, event_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        db = database.get_db()
        details = details or {}
        await db.stripe_events.update_one(
            {"event_id": event_id},
            {
                "$set": {
                    "status": StripeEventStatus.PROCESSED.value,
                    "processed_at": datetime.now(timezone.utc),
                    "last_error": None,
                    "related_user_id": details.get("user_id"),
                    "related_subscription_id": details.get("subscription_id"),
                }
            },
        )

    async def mark_failed(self, event_id: str, error: Any) -> None:
        db = database.get_db()
        await db.stripe_events.update_one(
            {"event_id": event_id},
            {
                "$set": {
                    "status": StripeEventStatus.FAILED.value,
                    "failed_at": datetime.now(timezone.utc),
                    "last_error": str(error)[:MAX_ERROR_LENGTH],
                }
            },
        )

    async def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})


stripe_event_ledger = StripeEventLedger()
