"""
Recompute a customer's Pro entitlement from Stripe (same path as subscription.deleted).

Use when a webhook was lost or a user's tier looks wrong. Also cancels duplicate
active subscriptions on the customer.

Usage (from backend/):
  python -m scripts.resync_customer --customer-id cus_123
  python -m scripts.resync_customer --customer-id cus_123 --user-id <user_id>
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database
from services.billing_config import get_billing_config


async def run(customer_id: str, user_id: str = None) -> bool:
    from services.stripe_gateway import StripeGateway
    from services.stripe_webhook_service import StripeWebhookService

    config = get_billing_config()
    if not config.stripe_secret_key:
        print("STRIPE_SECRET_KEY is not configured")
        return False

    service = StripeWebhookService(StripeGateway(config.stripe_secret_key), config=config)
    result = await service.resync_customer(customer_id, user_id=user_id)

    if not result.get("user_id"):
        print(f"No user linked to customer_id={customer_id}; nothing written")
        return False
    print(f"Customer {customer_id} -> user {result['user_id']}: {result['action']}")
    if result.get("subscription_id"):
        print(f"  subscription_id={result['subscription_id']}")
    for sub_id in result.get("canceled_duplicates") or []:
        print(f"  canceled duplicate {sub_id}")
    return True


def main():
    parser = argparse.ArgumentParser(description="Resync a Stripe customer's entitlement")
    parser.add_argument("--customer-id", required=True, help="Stripe customer ID (cus_...)")
    parser.add_argument("--user-id", help="User ID to link if the customer is not linked yet")
    args = parser.parse_args()

    async def _():
        await database.connect()
        try:
            return await run(customer_id=args.customer_id, user_id=args.user_id)
        finally:
            await database.close()

    ok = asyncio.run(_())
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
