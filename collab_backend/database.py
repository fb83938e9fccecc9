import copy
import logging
from typing import Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .config import DEFAULT_DATABASE_NAME, Settings
from .errors import PersistenceError, RecordNotFound
from .models.records import Record, RecordKind, utcnow

logger = logging.getLogger("uvicorn.error")


def new_record_id() -> str:
    return str(ObjectId())


class Store:
    """Document store contract.

    Every operation is independent and non-transactional. ``update`` overwrites
    the given fields unconditionally, so concurrent writers race and the last
    one to land wins.
    """

    async def list(self, kind: RecordKind) -> List[Record]:
        raise NotImplementedError

    async def create(self, kind: RecordKind, title: Optional[str]) -> Record:
        raise NotImplementedError

    async def get(self, kind: RecordKind, record_id: str) -> Record:
        raise NotImplementedError

    async def update(self, kind: RecordKind, record_id: str, fields: dict) -> Record:
        raise NotImplementedError

    async def delete(self, kind: RecordKind, record_id: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MongoStore(Store):
    def __init__(self, client: AsyncIOMotorClient, database_name: Optional[str] = None):
        self.client = client
        if database_name:
            self.database = client[database_name]
        else:
            self.database = client.get_default_database(default=DEFAULT_DATABASE_NAME)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MongoStore":
        client = AsyncIOMotorClient(settings.mongodb_uri, tz_aware=True)
        return cls(client, settings.database_name)

    def _collection(self, kind: RecordKind):
        return self.database[kind.value]

    async def list(self, kind):
        try:
            raw = await self._collection(kind).find().to_list(length=None)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to list {kind.value}: {e}") from e
        return [kind.parse(doc) for doc in raw]

    async def create(self, kind, title):
        record = kind.new(new_record_id(), title)
        try:
            await self._collection(kind).insert_one(record.to_mongo())
        except PyMongoError as e:
            raise PersistenceError(f"Failed to create {kind.label.lower()}: {e}") from e
        logger.info(f"[Store] Created {kind.label.lower()} {record.id}")
        return record

    async def get(self, kind, record_id):
        try:
            doc = await self._collection(kind).find_one({"_id": record_id})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to fetch {kind.label.lower()} {record_id}: {e}") from e
        if not doc:
            raise RecordNotFound(kind.label, record_id)
        return kind.parse(doc)

    async def update(self, kind, record_id, fields):
        try:
            doc = await self._collection(kind).find_one_and_update(
                {"_id": record_id},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to update {kind.label.lower()} {record_id}: {e}") from e
        if not doc:
            raise RecordNotFound(kind.label, record_id)
        return kind.parse(doc)

    async def delete(self, kind, record_id):
        try:
            result = await self._collection(kind).delete_one({"_id": record_id})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to delete {kind.label.lower()} {record_id}: {e}") from e
        if result.deleted_count == 0:
            raise RecordNotFound(kind.label, record_id)
        logger.info(f"[Store] Deleted {kind.label.lower()} {record_id}")

    async def close(self):
        self.client.close()


class MemoryStore(Store):
    """In-process store for local development and tests. Single process only."""

    def __init__(self):
        self.records: Dict[RecordKind, Dict[str, dict]] = {kind: {} for kind in RecordKind}

    async def list(self, kind):
        return [kind.parse(copy.deepcopy(doc)) for doc in self.records[kind].values()]

    async def create(self, kind, title):
        record = kind.new(new_record_id(), title)
        self.records[kind][record.id] = record.to_mongo()
        return record

    async def get(self, kind, record_id):
        doc = self.records[kind].get(record_id)
        if doc is None:
            raise RecordNotFound(kind.label, record_id)
        return kind.parse(copy.deepcopy(doc))

    async def update(self, kind, record_id, fields):
        doc = self.records[kind].get(record_id)
        if doc is None:
            raise RecordNotFound(kind.label, record_id)
        doc.update(copy.deepcopy(fields))
        return kind.parse(copy.deepcopy(doc))

    async def delete(self, kind, record_id):
        if self.records[kind].pop(record_id, None) is None:
            raise RecordNotFound(kind.label, record_id)


def build_store(settings: Settings) -> Store:
    if settings.use_memory_store:
        logger.info("[Store] Using in-memory store")
        return MemoryStore()
    return MongoStore.from_settings(settings)


def touch(kind: RecordKind, value) -> dict:
    """Fields written when a room broadcasts new content for a record."""
    return {kind.content_field: value, "updatedAt": utcnow()}
