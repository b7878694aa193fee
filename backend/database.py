from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for billing lookups and webhook idempotency."""
        await create_billing_indexes(self.db)
        logger.info("MongoDB indexes created/verified")


async def create_billing_indexes(db):
    # Users - lookups by id (session) and by Stripe customer (webhooks)
    await db.users.create_index("id", unique=True)
    # Unlinked users store stripe_customer_id: null; only string ids are unique
    await db.users.create_index(
        "stripe_customer_id",
        unique=True,
        partialFilterExpression={"stripe_customer_id": {"$type": "string"}},
    )
    await db.users.create_index("stripe_subscription_id", sparse=True)

    # Stripe webhook idempotency - duplicate event_id must not process twice
    await db.stripe_events.create_index("event_id", unique=True)
    await db.stripe_events.create_index([("status", 1), ("claimed_at", 1)])

    # Audit log indexes
    await db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
    await db.audit_logs.create_index([("action", 1), ("timestamp", -1)])

# Global database instance
database = Database()

