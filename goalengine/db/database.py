"""
Persistence boundary — append/read stores

The engine only appends documents and reads them back. ``InMemoryStore`` is
the default; ``MongoStore`` persists through Motor when MONGODB_URI is set.
"""
from typing import Any, Dict, List, Optional
from copy import deepcopy
import logging

from motor.motor_asyncio import AsyncIOMotorClient

from goalengine.config import Settings

logger = logging.getLogger(__name__)


def _matches(doc: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(doc.get(key) == value for key, value in filters.items())


class InMemoryStore:
    """Process-local store; documents are copied in and out"""

    def __init__(self):
        self._collections: Dict[str, List[Dict[str, Any]]] = {}

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def append(self, collection: str, document: Dict[str, Any]) -> None:
        self._collections.setdefault(collection, []).append(deepcopy(document))

    async def read(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        docs = [deepcopy(d) for d in self._collections.get(collection, []) if _matches(d, filters)]
        return docs[-limit:] if limit else docs

    async def ping(self) -> bool:
        return True


class MongoStore:
    """MongoDB async store using Motor"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None

    async def connect(self) -> None:
        """Create MongoDB connection"""
        self.client = AsyncIOMotorClient(self.settings.MONGODB_URI)
        self.db = self.client[self.settings.MONGODB_DB_NAME]

        # Test connection
        await self.client.admin.command("ping")
        logger.info("MongoDB connection established")

    async def disconnect(self) -> None:
        """Close MongoDB connection"""
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    async def append(self, collection: str, document: Dict[str, Any]) -> None:
        await self.db[collection].insert_one(dict(document))

    async def read(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filters or {}, {"_id": 0}).sort("$natural", 1)
        docs = [doc async for doc in cursor]
        return docs[-limit:] if limit else docs

    async def ping(self) -> bool:
        """Health check - ping MongoDB"""
        try:
            await self.client.admin.command("ping")
            return True
        except Exception:
            return False


def create_store(settings: Settings):
    """Pick the store implementation from configuration"""
    if settings.MONGODB_URI:
        return MongoStore(settings)
    return InMemoryStore()
