"""
Document store access.

The service talks to its collections through DocumentStore. MongoDocumentStore
is the production backend (pymongo, blocking calls pushed to the thread pool);
MemoryDocumentStore keeps everything in process and is used when no
DATABASE_URL is configured, and by the test suite.

Documents cross this boundary as plain dicts carrying their id under "id".
"""

import copy
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi.concurrency import run_in_threadpool
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import DocumentNotFound

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "asset_tracker")


def new_id() -> str:
    return uuid.uuid4().hex


class DocumentStore:
    async def list(self, collection: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def find(self, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents whose fields equal every value in ``filters``."""
        raise NotImplementedError

    async def query(
        self,
        collection: str,
        order_by: str,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Insert under a generated id and return it."""
        raise NotImplementedError

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or replace the document stored under ``doc_id``."""
        raise NotImplementedError

    async def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> None:
        """Partial update; raises DocumentNotFound when the document is missing."""
        raise NotImplementedError

    async def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError


class MemoryDocumentStore(DocumentStore):
    """In-process store. Every read and write deep-copies so callers never alias stored data."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for name, docs in (initial or {}).items():
            self._collections[name] = {doc_id: copy.deepcopy(doc) for doc_id, doc in docs.items()}

    def _bucket(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    @staticmethod
    def _with_id(doc_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        out = copy.deepcopy(doc)
        out["id"] = doc_id
        return out

    async def list(self, collection):
        return [self._with_id(doc_id, doc) for doc_id, doc in self._bucket(collection).items()]

    async def get(self, collection, doc_id):
        doc = self._bucket(collection).get(doc_id)
        if doc is None:
            return None
        return self._with_id(doc_id, doc)

    async def find(self, collection, filters):
        return [
            self._with_id(doc_id, doc)
            for doc_id, doc in self._bucket(collection).items()
            if all(doc.get(k) == v for k, v in filters.items())
        ]

    async def query(self, collection, order_by, descending=False, limit=None):
        items = await self.list(collection)
        items.sort(key=lambda d: (d.get(order_by) is None, d.get(order_by)), reverse=descending)
        if limit is not None:
            items = items[:limit]
        return items

    async def add(self, collection, data):
        doc_id = new_id()
        await self.set(collection, doc_id, data)
        return doc_id

    async def set(self, collection, doc_id, data):
        doc = copy.deepcopy(data)
        doc.pop("id", None)
        self._bucket(collection)[doc_id] = doc

    async def update(self, collection, doc_id, changes):
        bucket = self._bucket(collection)
        if doc_id not in bucket:
            raise DocumentNotFound(collection, doc_id)
        bucket[doc_id].update(copy.deepcopy(changes))

    async def delete(self, collection, doc_id):
        self._bucket(collection).pop(doc_id, None)


class MongoDocumentStore(DocumentStore):
    """pymongo backend. Documents keep their id in ``_id``."""

    def __init__(self, db):
        self.db = db

    @staticmethod
    def _out(doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return doc

    @staticmethod
    def _in(data: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(data)
        doc.pop("id", None)
        doc.pop("_id", None)
        return doc

    async def list(self, collection):
        docs = await run_in_threadpool(lambda: list(self.db[collection].find({})))
        return [self._out(d) for d in docs]

    async def get(self, collection, doc_id):
        doc = await run_in_threadpool(self.db[collection].find_one, {"_id": doc_id})
        return self._out(doc) if doc else None

    async def find(self, collection, filters):
        docs = await run_in_threadpool(lambda: list(self.db[collection].find(filters)))
        return [self._out(d) for d in docs]

    async def query(self, collection, order_by, descending=False, limit=None):
        def _run():
            cursor = self.db[collection].find({}).sort(order_by, DESCENDING if descending else ASCENDING)
            if limit is not None:
                cursor = cursor.limit(limit)
            return list(cursor)

        docs = await run_in_threadpool(_run)
        return [self._out(d) for d in docs]

    async def add(self, collection, data):
        doc_id = new_id()
        doc = self._in(data)
        doc["_id"] = doc_id
        await run_in_threadpool(self.db[collection].insert_one, doc)
        return doc_id

    async def set(self, collection, doc_id, data):
        await run_in_threadpool(self.db[collection].replace_one, {"_id": doc_id}, self._in(data), True)

    async def update(self, collection, doc_id, changes):
        if not self._in(changes):
            # $set refuses an empty document
            if await self.get(collection, doc_id) is None:
                raise DocumentNotFound(collection, doc_id)
            return
        result = await run_in_threadpool(
            self.db[collection].update_one, {"_id": doc_id}, {"$set": self._in(changes)}
        )
        if result.matched_count == 0:
            raise DocumentNotFound(collection, doc_id)

    async def delete(self, collection, doc_id):
        await run_in_threadpool(self.db[collection].delete_one, {"_id": doc_id})


def get_store() -> DocumentStore:
    if not DATABASE_URL:
        logger.warning("DATABASE_URL not set, using the in-memory document store")
        return MemoryDocumentStore()
    client = MongoClient(DATABASE_URL)
    return MongoDocumentStore(client[DATABASE_NAME])


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()
