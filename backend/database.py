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
            self.client = AsyncIOMotorClient(mongo_url)
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
        """Create MongoDB indexes for template and letter lookups."""
        try:
            # Templates - id lookup, category/active listing, name search
            await self.db.templates.create_index("template_id", unique=True)
            await self.db.templates.create_index([("category", 1), ("is_active", 1)])
            await self.db.templates.create_index("name")
            await self.db.templates.create_index("metadata.tags")

            # Template history - one snapshot per replaced version
            await self.db.template_versions.create_index(
                [("template_id", 1), ("version", 1)],
                unique=True
            )

            # Generated letters - per client/service listings, newest first
            await self.db.generated_letters.create_index("letter_id", unique=True)
            await self.db.generated_letters.create_index([("client_id", 1), ("generated_at", -1)])
            await self.db.generated_letters.create_index([("service_id", 1), ("generated_at", -1)])
            await self.db.generated_letters.create_index([("template_id", 1), ("generated_at", -1)])
            await self.db.generated_letters.create_index("status")

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("timestamp")

            # Client directory lookups
            await self.db.clients.create_index("client_id", unique=True)
            await self.db.services.create_index("service_id", unique=True)
            await self.db.client_contacts.create_index([("client_id", 1), ("primary_contact", 1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

