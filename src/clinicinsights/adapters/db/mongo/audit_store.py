"""
MongoDB audit store for AI pipeline executions.
Entries are appended once, patched by execution id and removed only by retention cleanup.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from clinicinsights.application.ports.repositories.audit_store import AuditStore
from clinicinsights.core.config import DatabaseSettings
from clinicinsights.core.exceptions import AuditError, ConfigurationError
from clinicinsights.domain.audit import SORT_FIELDS, AuditEntry, AuditFilter

logger = logging.getLogger(__name__)


class MongoAuditStore(AuditStore):
    """
    Audit store on a single MongoDB collection.
    Indexed by execution id (unique), timestamp and the identity fields used in filters.
    """

    def __init__(self, client: AsyncIOMotorClient, db_name: str, collection_name: str):
        self.client = client
        self.db = client[db_name]
        self.collection = self.db[collection_name]
        self._initialized = False

    @classmethod
    async def connect(cls, settings: DatabaseSettings) -> "MongoAuditStore":
        """Create the client and make sure indexes exist"""
        if not settings.uri:
            raise ConfigurationError("MongoDB URI is required for the mongo audit backend. Set MONGO_URI.")
        client = AsyncIOMotorClient(
            settings.uri,
            tls=settings.tls,
            retryWrites=True,
            w="majority",
        )
        store = cls(client, settings.db_name, settings.audit_collection)
        await store.initialize()
        return store

    async def initialize(self):
        """Create indexes for efficient querying"""
        try:
            await self._create_indexes()
            self._initialized = True
            logger.info(f"Mongo audit store initialized collection={self.collection.name}")
        except Exception as e:
            logger.error(f"Failed to initialize Mongo audit store: {e}")
            raise

    async def _create_indexes(self):
        await self.collection.create_index("execution_id", unique=True)
        await self.collection.create_index([("timestamp", DESCENDING)])
        await self.collection.create_index([("pipeline_type", ASCENDING), ("timestamp", DESCENDING)])
        await self.collection.create_index([("patient_id", ASCENDING), ("timestamp", DESCENDING)])
        await self.collection.create_index([("organization_id", ASCENDING), ("timestamp", DESCENDING)])

    @staticmethod
    def build_query(audit_filter: AuditFilter) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        for name in ("execution_id", "pipeline_type", "patient_id", "session_id", "user_id", "organization_id"):
            value = getattr(audit_filter, name)
            if value is not None:
                query[name] = value
        if audit_filter.start_date or audit_filter.end_date:
            query["timestamp"] = {}
            if audit_filter.start_date:
                query["timestamp"]["$gte"] = audit_filter.start_date
            if audit_filter.end_date:
                query["timestamp"]["$lte"] = audit_filter.end_date
        if audit_filter.success is not None:
            query["response.success"] = audit_filter.success
        if audit_filter.cache_hit is not None:
            query["performance.cache_hit"] = audit_filter.cache_hit
        return query

    async def insert(self, entry: AuditEntry) -> None:
        try:
            await self.collection.insert_one(entry.to_document())
        except Exception as e:
            raise AuditError(f"Failed to insert audit entry: {e}", {"execution_id": entry.execution_id})

    async def update(self, execution_id: str, fields: Dict[str, Any]) -> bool:
        update: Dict[str, Any] = {}
        for section, value in fields.items():
            if section == "metadata":
                for key, item in value.items():
                    update[f"metadata.{key}"] = item
            else:
                update[section] = value
        if not update:
            return False
        try:
            result = await self.collection.update_one({"execution_id": execution_id}, {"$set": update})
        except Exception as e:
            raise AuditError(f"Failed to update audit entry: {e}", {"execution_id": execution_id})
        return result.matched_count > 0

    async def find(self, audit_filter: AuditFilter) -> Tuple[List[AuditEntry], int]:
        query = self.build_query(audit_filter)
        sort_field = SORT_FIELDS.get(audit_filter.order_by, "timestamp")
        direction = ASCENDING if audit_filter.order_direction.lower() == "asc" else DESCENDING

        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query, {"_id": 0}).sort(sort_field, direction).skip(audit_filter.offset)
        if audit_filter.limit is not None:
            cursor = cursor.limit(audit_filter.limit)
        documents = await cursor.to_list(length=audit_filter.limit)
        return [AuditEntry.from_document(doc) for doc in documents], total

    async def count_before(self, cutoff: datetime) -> int:
        return await self.collection.count_documents({"timestamp": {"$lt": cutoff}})

    async def delete_before(self, cutoff: datetime) -> int:
        result = await self.collection.delete_many({"timestamp": {"$lt": cutoff}})
        return result.deleted_count

    async def ping(self) -> None:
        await self.client.admin.command("ping")

    async def close(self) -> None:
        self.client.close()
