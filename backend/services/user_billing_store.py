"""User billing store - reads and writes the billing fields of `users`.

Billing fields owned here: tier, stripe_customer_id, stripe_subscription_id,
pro_expires_at. Entitlement writes always set all three entitlement fields
together so a record is never half pro / half free.

The Stripe customer link is first-write-wins: once a user has a
stripe_customer_id it is never replaced.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from database import database
from models import ActorRole, AuditAction, UserTier
from services.entitlement_policy import as_utc
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

_PROJECTION = {"_id": 0}


class ResolutionSource(str, Enum):
    FOUND_BY_USER_ID = "found_by_user_id"
    FOUND_BY_CUSTOMER_ID = "found_by_customer_id"
    NOT_FOUND = "not_found"


@dataclass
class UserResolution:
    source: ResolutionSource
    user: Optional[Dict[str, Any]] = None

    @property
    def found(self) -> bool:
        return self.user is not None


@dataclass(frozen=True)
class EntitlementUpdate:
    tier: UserTier
    stripe_subscription_id: Optional[str] = None
    pro_expires_at: Optional[datetime] = None

    @classmethod
    def pro(cls, subscription_id: str, expires_at: Optional[datetime]) -> "EntitlementUpdate":
        return cls(tier=UserTier.PRO, stripe_subscription_id=subscription_id, pro_expires_at=expires_at)

    @classmethod
    def free(cls) -> "EntitlementUpdate":
        return cls(tier=UserTier.FREE)

    def as_fields(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "stripe_subscription_id": self.stripe_subscription_id,
            "pro_expires_at": self.pro_expires_at,
        }


@dataclass
class EntitlementResult:
    source: ResolutionSource
    user_id: Optional[str] = None
    changed: bool = False


def _entitlement_snapshot(user: Dict[str, Any]) -> Dict[str, Any]:
    expires_at = user.get("pro_expires_at")
    tier = user.get("tier") or UserTier.FREE.value
    return {
        "tier": getattr(tier, "value", tier),
        "stripe_subscription_id": user.get("stripe_subscription_id"),
        "pro_expires_at": as_utc(expires_at) if expires_at else None,
    }


def _audit_state(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    expires_at = snapshot.get("pro_expires_at")
    return {**snapshot, "pro_expires_at": expires_at.isoformat() if expires_at else None}


class UserBillingStore:
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.users.find_one({"id": user_id}, _PROJECTION)

    async def get_user_by_customer_id(self, customer_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.users.find_one({"stripe_customer_id": customer_id}, _PROJECTION)

    async def resolve_user(
        self,
        user_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> UserResolution:
        """Find the user an event refers to: explicit user id first, then customer id."""
        if user_id:
            user = await self.get_user(user_id)
            if user:
                return UserResolution(ResolutionSource.FOUND_BY_USER_ID, user)

        if customer_id:
            user = await self.get_user_by_customer_id(customer_id)
            if user:
                return UserResolution(ResolutionSource.FOUND_BY_CUSTOMER_ID, user)

        return UserResolution(ResolutionSource.NOT_FOUND)

    async def set_stripe_customer_id(self, user_id: str, customer_id: str) -> Optional[str]:
        """Link a Stripe customer if the user has none yet. Returns the stored id.

        The stored id may differ from `customer_id` when another request
        linked a customer first.
        """
        db = database.get_db()
        result = await db.users.update_one(
            {"id": user_id, "stripe_customer_id": None},
            {"$set": {"stripe_customer_id": customer_id}},
        )

        if result.modified_count:
            logger.info(f"Linked Stripe customer {customer_id} to user {user_id}")
            await create_audit_log(
                action=AuditAction.STRIPE_CUSTOMER_LINKED,
                actor_role=ActorRole.SYSTEM,
                user_id=user_id,
                resource_type="user",
                resource_id=user_id,
                metadata={"stripe_customer_id": customer_id},
            )

        user = await db.users.find_one({"id": user_id}, {"_id": 0, "stripe_customer_id": 1})
        stored = (user or {}).get("stripe_customer_id")
        if stored and stored != customer_id:
            logger.warning(
                f"User {user_id} already linked to Stripe customer {stored}; ignoring {customer_id}"
            )
        return stored

    async def apply_entitlement(
        self,
        update: EntitlementUpdate,
        user_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> EntitlementResult:
        """Write tier, subscription id and expiry to the resolved user.

        No-op (with a warning) when no user matches. Skips the write when
        nothing would change, so Stripe replays do not touch the record.
        """
        resolution = await self.resolve_user(user_id=user_id, customer_id=customer_id)
        if not resolution.found:
            logger.warning(
                "ENTITLEMENT_USER_NOT_FOUND user_id=%s customer_id=%s tier=%s",
                user_id, customer_id, update.tier.value,
            )
            return EntitlementResult(source=resolution.source)

        user = resolution.user
        resolved_id = user["id"]

        if (
            resolution.source == ResolutionSource.FOUND_BY_USER_ID
            and customer_id
            and not user.get("stripe_customer_id")
        ):
            await self.set_stripe_customer_id(resolved_id, customer_id)

        before = _entitlement_snapshot(user)
        after = _entitlement_snapshot(update.as_fields())
        if before == after:
            logger.info(
                "ENTITLEMENT_UNCHANGED user_id=%s tier=%s subscription_id=%s",
                resolved_id, after["tier"], after["stripe_subscription_id"],
            )
            return EntitlementResult(source=resolution.source, user_id=resolved_id)

        db = database.get_db()
        await db.users.update_one(
            {"id": resolved_id},
            {
                "$set": {
                    **update.as_fields(),
                    "entitlement_updated_at": datetime.now(timezone.utc),
                }
            },
        )

        logger.info(
            "ENTITLEMENT_APPLIED user_id=%s source=%s tier=%s subscription_id=%s pro_expires_at=%s",
            resolved_id, resolution.source.value, after["tier"],
            after["stripe_subscription_id"], after["pro_expires_at"],
        )

        action = (
            AuditAction.ENTITLEMENT_GRANTED
            if update.tier == UserTier.PRO
            else AuditAction.ENTITLEMENT_REVOKED
        )
        await create_audit_log(
            action=action,
            actor_role=ActorRole.SYSTEM,
            user_id=resolved_id,
            resource_type="user",
            resource_id=resolved_id,
            before_state=_audit_state(before),
            after_state=_audit_state(after),
            metadata={"resolved_by": resolution.source.value, "stripe_customer_id": customer_id},
        )

        return EntitlementResult(source=resolution.source, user_id=resolved_id, changed=True)


user_billing_store = UserBillingStore()
