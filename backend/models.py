from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserType(str, Enum):
    """Session user type supplied by the auth provider."""
    GUEST = "guest"
    REGULAR = "regular"
    PRO = "pro"

class UserTier(str, Enum):
    FREE = "free"
    PRO = "pro"

class SubscriptionStatus(str, Enum):
    """Stripe subscription statuses."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"

class StripeEventStatus(str, Enum):
    CLAIMED = "claimed"
    PROCESSED = "processed"
    FAILED = "failed"

class CheckoutPaymentStatus(str, Enum):
    PAID = "paid"
    UNPAID = "unpaid"
    NO_PAYMENT_REQUIRED = "no_payment_required"

class AuditAction(str, Enum):
    # Entitlement
    ENTITLEMENT_GRANTED = "ENTITLEMENT_GRANTED"
    ENTITLEMENT_REVOKED = "ENTITLEMENT_REVOKED"
    STRIPE_CUSTOMER_LINKED = "STRIPE_CUSTOMER_LINKED"

    # Webhooks
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"
    DUPLICATE_SUBSCRIPTION_CANCELED = "DUPLICATE_SUBSCRIPTION_CANCELED"

class ActorRole(str, Enum):
    SYSTEM = "SYSTEM"
    USER = "USER"

# ============================================================================
# STORED DOCUMENTS
# ============================================================================

class StripeEventRecord(BaseModel):
    """Ledger row in the `stripe_events` collection (one per Stripe event id)."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    event_id: str
    event_type: Optional[str] = None
    status: StripeEventStatus = StripeEventStatus.CLAIMED
    attempts: int = 1
    claimed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    related_user_id: Optional[str] = None
    related_subscription_id: Optional[str] = None

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[ActorRole] = None
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

# ============================================================================
# SESSION
# ============================================================================

class SessionUser(BaseModel):
    """Authenticated caller as supplied by the session token."""
    model_config = ConfigDict(extra="ignore")

    id: str
    type: UserType = UserType.REGULAR
    email: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.type == UserType.GUEST

# ============================================================================
# API PAYLOADS
# ============================================================================

class CamelModel(BaseModel):
    """Response models serialized with camelCase keys for the web client."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class CheckoutRequest(BaseModel):
    plan: Optional[str] = "pro"

class BillingUrlResponse(CamelModel):
    url: str
    message: Optional[str] = None

class VerifyCheckoutResponse(CamelModel):
    verified: bool
    status: Optional[str] = None
    tier: Optional[UserTier] = None
    subscription_id: Optional[str] = None

class BillingLimitsResponse(CamelModel):
    is_pro: bool
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    checkout_url: str
    portal_url: str
    pro_expires_at: Optional[datetime] = None

class BillingStatusResponse(CamelModel):
    tier: UserTier
    is_pro: bool
    has_customer: bool
    stripe_subscription_id: Optional[str] = None
    pro_expires_at: Optional[datetime] = None
    lifetime_access: bool = False
