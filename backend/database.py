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
            # tz_aware so period/grace timestamps compare against datetime.now(timezone.utc)
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
        """Create MongoDB indexes for billing lookups and sweeps."""
        try:
            await self.db.workspaces.create_index("workspace_id", unique=True)
            # Webhook lookups by provider subscription id
            await self.db.workspaces.create_index("external_subscription_id", sparse=True)
            # Grace sweep predicate
            await self.db.workspaces.create_index([("subscription_status", 1), ("grace_period_end", 1)])
            # Scheduled downgrade predicate
            await self.db.workspaces.create_index(
                [("pending_plan_id", 1), ("pending_plan_effective_at", 1)],
                sparse=True
            )

            await self.db.plan_configs.create_index("key", unique=True)
            await self.db.plan_configs.create_index("sort_order")

            # Usage ledger - aggregated per workspace/type
            await self.db.usage_events.create_index([("workspace_id", 1), ("type", 1), ("created_at", -1)])
            await self.db.usage_events.create_index("event_id", unique=True)

            # Provider event ledger - one row per delivered event
            try:
                await self.db.billing_events.create_index(
                    [("provider", 1), ("event_id", 1)],
                    unique=True
                )
            except Exception:
                pass  # Index may already exist with different options
            await self.db.billing_events.create_index([("status", 1), ("created_at", -1)])

            await self.db.audit_logs.create_index([("workspace_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])

            logger.info("Database indexes created successfully")
        except Exception as e:
            logger.warning(f"Index creation warning (may already exist): {e}")

# Global database instance
database = Database()
