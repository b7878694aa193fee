"""Stripe Webhook Service - reconciles entitlement from Stripe events.

Key Principles:
1. Signature verification: the Stripe-Signature header over the raw body is
   the only authentication for this endpoint
2. Exactly-once effect: every event is claimed in the ledger before any
   handler runs; replays return 200 without touching Stripe or the store
3. Stripe is the source of truth: checkout completion re-reads the live
   subscription, and every downgrade goes through a full resync of the
   customer's subscriptions instead of trusting event order
4. Failures are retried by Stripe: a handler exception marks the event
   failed and returns 500 so Stripe redelivers

Events Handled:
- checkout.session.completed (fetch live subscription, grant, dedup)
- customer.subscription.created / updated (grant from payload, else resync)
- customer.subscription.deleted (always resync)
- invoice.paid / invoice.payment_failed (logged only)
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

import stripe
from fastapi import Depends

from models import ActorRole, AuditAction
from services.billing_config import BillingConfig, BillingConfigError, get_billing_config
from services.entitlement_policy import (
    get_subscription_period_end,
    is_live_duplicate_status,
    is_subscription_entitled,
    select_preferred_subscription,
    should_dedupe_on_status,
)
from services.stripe_event_ledger import StripeEventLedger, stripe_event_ledger
from services.stripe_gateway import StripeGateway, get_stripe_gateway
from services.user_billing_store import EntitlementUpdate, UserBillingStore, user_billing_store
from services.webhook_events import (
    CheckoutSessionCompleted,
    InvoiceObserved,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnhandledEvent,
    WebhookEvent,
    stripe_id,
    parse_event,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class WebhookResult(NamedTuple):
    status_code: int
    message: str
    details: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class StripeWebhookService:
    """Verifies, claims and dispatches Stripe webhook events."""

    def __init__(
        self,
        gateway: StripeGateway,
        ledger: StripeEventLedger = stripe_event_ledger,
        store: UserBillingStore = user_billing_store,
        config: Optional[BillingConfig] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.store = store
        self.config = config or get_billing_config()
        self._handlers = {
            CheckoutSessionCompleted: self._handle_checkout_completed,
            SubscriptionChanged: self._handle_subscription_changed,
            SubscriptionDeleted: self._handle_subscription_deleted,
            InvoiceObserved: self._handle_invoice_observed,
            UnhandledEvent: self._handle_unhandled,
        }

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """Main webhook entry point. Never raises; the result carries the HTTP status."""
        try:
            webhook_secret = self.config.require_webhook_secret()
        except BillingConfigError as e:
            logger.error("Webhook rejected: %s", e)
            return WebhookResult(500, "Webhook secret not configured")

        if not signature:
            return WebhookResult(400, "Missing Stripe signature")

        try:
            raw_event = self.gateway.construct_event(payload, signature, webhook_secret)
            event = parse_event(raw_event)
        except stripe.error.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return WebhookResult(400, "Invalid signature")
        except ValueError as e:
            logger.error("Webhook parse error: %s", e)
            return WebhookResult(400, "Invalid payload")

        event_id = event.event_id
        event_type = event.event_type
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s",
            event_id, event_type, raw_event.get("livemode"),
        )

        try:
            claim = await self.ledger.claim(
                event_id,
                event_type,
                claim_ttl=self.config.event_claim_ttl,
            )
        except Exception:
            logger.exception("WEBHOOK_CLAIM_FAILED event_id=%s event_type=%s", event_id, event_type)
            return WebhookResult(500, "Failed to process Stripe webhook event")

        if not claim.should_process:
            logger.info("WEBHOOK_REPLAY_SKIPPED event_id=%s event_type=%s", event_id, event_type)
            return WebhookResult(200, "Already processed", {"event_id": event_id})

        try:
            details = await self.dispatch(event)
            await self.ledger.mark_processed(event_id, details)
        except Exception as e:
            logger.exception(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            await self._record_failure(event_id, event_type, e)
            return WebhookResult(500, "Failed to process Stripe webhook event", {"event_id": event_id})

        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s subscription_id=%s",
            event_id, event_type, details.get("user_id"), details.get("subscription_id"),
        )
        return WebhookResult(200, "Processed", details)

    async def dispatch(self, event: WebhookEvent) -> Dict[str, Any]:
        handler = self._handlers[type(event)]
        logger.info("HANDLER_START event_id=%s handler=%s", event.event_id, handler.__name__)
        details = await handler(event)
        logger.info("HANDLER_END event_id=%s handler=%s", event.event_id, handler.__name__)
        return details

    async def _record_failure(self, event_id: str, event_type: str, error: Exception) -> None:
        try:
            await self.ledger.mark_failed(event_id, error)
        except Exception:
            # Row stays "claimed"; it becomes reclaimable once the claim TTL passes
            logger.exception("Failed to mark Stripe event %s as failed", event_id)

        await create_audit_log(
            action=AuditAction.STRIPE_EVENT_FAILED,
            actor_role=ActorRole.SYSTEM,
            resource_type="stripe_event",
            resource_id=event_id,
            metadata={
                "event_id": event_id,
                "event_type": event_type,
                "error": str(error),
            },
        )

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_checkout_completed(self, event: CheckoutSessionCompleted) -> Dict[str, Any]:
        """Primary grant path: re-read the live subscription the session created."""
        if not event.subscription_id:
            # One-off or setup session: nothing to entitle, but remember the customer
            if event.user_id and event.customer_id:
                await self.store.set_stripe_customer_id(event.user_id, event.customer_id)
            logger.info(
                "Checkout %s completed without a subscription (mode=%s)",
                event.session_id, event.mode,
            )
            return {"handled": True, "user_id": event.user_id, "action": "customer_linked"}

        subscription = await self.gateway.retrieve_subscription(event.subscription_id)
        customer_id = event.customer_id or stripe_id(subscription.get("customer"))
        user_id = event.user_id or (subscription.get("metadata") or {}).get("user_id")

        if not is_subscription_entitled(subscription, grace_period=self.config.grace_period):
            logger.info(
                "Checkout %s subscription %s not entitled (status=%s); resyncing customer",
                event.session_id, event.subscription_id, subscription.get("status"),
            )
            if not customer_id:
                return {"handled": True, "user_id": user_id, "action": "skipped_no_customer"}
            return await self.resync_customer(customer_id, user_id=user_id)

        result = await self.store.apply_entitlement(
            EntitlementUpdate.pro(event.subscription_id, get_subscription_period_end(subscription)),
            user_id=user_id,
            customer_id=customer_id,
        )

        canceled: List[str] = []
        if customer_id and should_dedupe_on_status(subscription.get("status")):
            canceled = await self.cancel_duplicate_subscriptions(
                customer_id,
                keep_subscription_id=event.subscription_id,
                user_id=result.user_id,
            )

        return {
            "handled": True,
            "action": "granted",
            "user_id": result.user_id,
            "subscription_id": event.subscription_id,
            "canceled_duplicates": canceled,
        }

    async def _handle_subscription_changed(self, event: SubscriptionChanged) -> Dict[str, Any]:
        """The payload is authoritative for its own subscription; downgrades resync."""
        if not event.customer_id:
            logger.warning("Subscription event %s has no customer; ignoring", event.event_id)
            return {"handled": False, "subscription_id": event.subscription_id}

        if is_subscription_entitled(event.subscription, grace_period=self.config.grace_period):
            result = await self.store.apply_entitlement(
                EntitlementUpdate.pro(event.subscription_id, get_subscription_period_end(event.subscription)),
                user_id=event.user_id,
                customer_id=event.customer_id,
            )
            return {
                "handled": True,
                "action": "granted",
                "user_id": result.user_id,
                "subscription_id": event.subscription_id,
            }

        logger.info(
            "Subscription %s is %s; resyncing customer %s",
            event.subscription_id, event.status, event.customer_id,
        )
        return await self.resync_customer(event.customer_id, user_id=event.user_id)

    async def _handle_subscription_deleted(self, event: SubscriptionDeleted) -> Dict[str, Any]:
        if not event.customer_id:
            logger.warning("Subscription deletion %s has no customer; ignoring", event.event_id)
            return {"handled": False, "subscription_id": event.subscription_id}
        return await self.resync_customer(event.customer_id, user_id=event.user_id)

    async def _handle_invoice_observed(self, event: InvoiceObserved) -> Dict[str, Any]:
        # Subscription status events carry the entitlement consequence of invoices
        logger.info(
            "INVOICE_OBSERVED event_type=%s invoice_id=%s customer_id=%s subscription_id=%s",
            event.event_type, event.invoice_id, event.customer_id, event.subscription_id,
        )
        return {"handled": True, "action": "logged", "subscription_id": event.subscription_id}

    async def _handle_unhandled(self, event: UnhandledEvent) -> Dict[str, Any]:
        logger.info(f"Ignoring unhandled event type: {event.event_type}")
        return {"handled": False, "event_type": event.event_type}

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def resync_customer(self, customer_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Recompute entitlement from every subscription the customer holds.

        Listing failures propagate so the event is marked failed and retried.
        """
        now = datetime.now(timezone.utc)
        subscriptions = await self.gateway.list_subscriptions(customer_id)
        preferred = select_preferred_subscription(
            subscriptions,
            now=now,
            grace_period=self.config.grace_period,
        )

        if preferred is None:
            result = await self.store.apply_entitlement(
                EntitlementUpdate.free(),
                user_id=user_id,
                customer_id=customer_id,
            )
            logger.info(
                "RESYNC_DOWNGRADED customer_id=%s user_id=%s subscriptions=%s",
                customer_id, result.user_id, len(subscriptions),
            )
            return {"handled": True, "action": "downgraded", "user_id": result.user_id}

        preferred_id = preferred.get("id")
        result = await self.store.apply_entitlement(
            EntitlementUpdate.pro(preferred_id, get_subscription_period_end(preferred)),
            user_id=user_id,
            customer_id=customer_id,
        )
        logger.info(
            "RESYNC_ENTITLED customer_id=%s user_id=%s subscription_id=%s status=%s",
            customer_id, result.user_id, preferred_id, preferred.get("status"),
        )

        canceled: List[str] = []
        if should_dedupe_on_status(preferred.get("status")):
            canceled = await self.cancel_duplicate_subscriptions(
                customer_id,
                keep_subscription_id=preferred_id,
                user_id=result.user_id,
                subscriptions=subscriptions,
            )

        return {
            "handled": True,
            "action": "resynced",
            "user_id": result.user_id,
            "subscription_id": preferred_id,
            "canceled_duplicates": canceled,
        }

    async def cancel_duplicate_subscriptions(
        self,
        customer_id: str,
        keep_subscription_id: str,
        user_id: Optional[str] = None,
        subscriptions: Optional[List[Dict[str, Any]]] = None,
    ) -> List[str]:
        """Cancel every other live subscription on the customer. Best-effort.

        Skipped entirely unless the kept subscription is still active in the
        current listing.

        Returns the ids that were canceled; failures are logged and skipped.
        """
        if subscriptions is None:
            try:
                subscriptions = await self.gateway.list_subscriptions(customer_id)
            except Exception as e:
                logger.error(f"Could not list subscriptions for dedup on {customer_id}: {e}")
                return []

        # A concurrent checkout may already have canceled the subscription we were told to keep
        kept = next((sub for sub in subscriptions if sub.get("id") == keep_subscription_id), None)
        if kept is None or not should_dedupe_on_status(kept.get("status")):
            logger.warning(
                "DEDUP_SKIPPED customer_id=%s kept=%s kept_status=%s",
                customer_id, keep_subscription_id, (kept or {}).get("status"),
            )
            return []

        canceled: List[str] = []
        for sub in subscriptions:
            sub_id = sub.get("id")
            if not sub_id or sub_id == keep_subscription_id:
                continue
            if not is_live_duplicate_status(sub.get("status")):
                continue

            try:
                await self.gateway.cancel_subscription(sub_id)
            except Exception as e:
                logger.error(
                    "DEDUP_CANCEL_FAILED customer_id=%s subscription_id=%s error=%s",
                    customer_id, sub_id, e,
                )
                continue

            canceled.append(sub_id)
            logger.info(
                "DEDUP_CANCELED customer_id=%s canceled=%s kept=%s",
                customer_id, sub_id, keep_subscription_id,
            )
            await create_audit_log(
                action=AuditAction.DUPLICATE_SUBSCRIPTION_CANCELED,
                actor_role=ActorRole.SYSTEM,
                user_id=user_id,
                resource_type="stripe_subscription",
                resource_id=sub_id,
                metadata={
                    "stripe_customer_id": customer_id,
                    "kept_subscription_id": keep_subscription_id,
                    "previous_status": sub.get("status"),
                },
            )

        return canceled


def get_webhook_service(gateway: StripeGateway = Depends(get_stripe_gateway)) -> StripeWebhookService:
    return StripeWebhookService(gateway)
