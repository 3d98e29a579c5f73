"""
Document store access for Plug-In.

Components receive a ``DocumentStore`` instance instead of reaching for a
process-wide client. ``MongoStore`` talks to MongoDB through pymongo's asyncio
client; ``MemoryStore`` keeps everything in process and is what the tests and
local development use.

Snapshots handed to subscribers and returned by ``query`` are lists of
``(doc_id, data)`` pairs. A subscription to a single document receives a list
with zero or one pair.
"""
import asyncio
import copy
import inspect
import logging
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import AsyncMongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from errors import NotFoundError, TransientBackendError

_LOGGER = logging.getLogger(__name__)

Snapshot = List[Tuple[str, Dict[str, Any]]]
SnapshotHandler = Callable[[Snapshot], Union[None, Awaitable[None]]]


def matches(data: Optional[Dict[str, Any]], filters: Optional[Dict[str, Any]]) -> bool:
    """Equality match; a list field matches when it contains the value."""
    if data is None:
        return False
    for key, expected in (filters or {}).items():
        actual = data.get(key)
        if isinstance(actual, list) and not isinstance(expected, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class Subscription:
    """Handle returned by ``DocumentStore.subscribe``. Cancelling twice is harmless."""

    def __init__(self, on_cancel: Callable[[], Any]):
        self._on_cancel = on_cancel
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._on_cancel()

    def end(self) -> None:
        """Called by the store when the underlying feed stops on its own."""
        self.active = False


class DocumentStore:
    name = "store"

    async def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def set_document(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        raise NotImplementedError

    async def update_document(self, collection: str, doc_id: str, fields: Dict[str, Any],
                              expected: Optional[Dict[str, Any]] = None) -> bool:
        """Set ``fields`` on an existing document.

        When ``expected`` is given the write only happens if the stored
        document still matches it; the return value says whether it did.
        Raises NotFoundError when the document does not exist.
        """
        raise NotImplementedError

    async def add_document(self, collection: str, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def increment_field(self, collection: str, doc_id: str, field: str, delta: Union[int, float]) -> None:
        raise NotImplementedError

    async def append_to_field(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        """Atomically append ``value`` to a list field."""
        raise NotImplementedError

    async def delete_document(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    async def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
                    limit: Optional[int] = None) -> Snapshot:
        raise NotImplementedError

    async def subscribe(self, collection: str, filters: Optional[Dict[str, Any]], on_snapshot: SnapshotHandler,
                        doc_id: Optional[str] = None) -> Subscription:
        """Deliver the current snapshot, then a full snapshot on every change."""
        raise NotImplementedError

    async def collection_names(self) -> List[str]:
        raise NotImplementedError


async def _call_handler(handler: SnapshotHandler, snapshot: Snapshot) -> None:
    result = handler(snapshot)
    if inspect.isawaitable(result):
        await result


# ---------------------------
# In-memory store
# ---------------------------

class _Listener:
    def __init__(self, collection, filters, doc_id, handler):
        self.collection = collection
        self.filters = filters
        self.doc_id = doc_id
        self.handler = handler
        self.subscription: Optional[Subscription] = None


class MemoryStore(DocumentStore):
    """Process-local store with synchronous snapshot fan-out.

    Listeners are notified inside the writing coroutine, after the write,
    so by the time a write returns every affected subscriber has run.
    """
    name = "memory"

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: List[_Listener] = []

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    async def get_document(self, collection, doc_id):
        data = self._docs(collection).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def set_document(self, collection, doc_id, data, merge=False):
        docs = self._docs(collection)
        before = docs.get(doc_id)
        if merge and before is not None:
            after = {**before, **copy.deepcopy(data)}
        else:
            after = copy.deepcopy(data)
        docs[doc_id] = after
        await self._notify(collection, doc_id, before, after)

    async def update_document(self, collection, doc_id, fields, expected=None):
        docs = self._docs(collection)
        before = docs.get(doc_id)
        if before is None:
            raise NotFoundError(f"{collection}/{doc_id} not found")
        if expected and not matches(before, expected):
            return False
        docs[doc_id] = {**before, **copy.deepcopy(fields)}
        await self._notify(collection, doc_id, before, docs[doc_id])
        return True

    async def add_document(self, collection, data):
        doc_id = uuid.uuid4().hex
        await self.set_document(collection, doc_id, data)
        return doc_id

    async def increment_field(self, collection, doc_id, field, delta):
        docs = self._docs(collection)
        before = docs.get(doc_id)
        if before is None:
            raise NotFoundError(f"{collection}/{doc_id} not found")
        after = dict(before)
        after[field] = (after.get(field) or 0) + delta
        docs[doc_id] = after
        await self._notify(collection, doc_id, before, after)

    async def append_to_field(self, collection, doc_id, field, value):
        docs = self._docs(collection)
        before = docs.get(doc_id)
        if before is None:
            raise NotFoundError(f"{collection}/{doc_id} not found")
        after = dict(before)
        after[field] = list(after.get(field) or []) + [copy.deepcopy(value)]
        docs[doc_id] = after
        await self._notify(collection, doc_id, before, after)

    async def delete_document(self, collection, doc_id):
        before = self._docs(collection).pop(doc_id, None)
        if before is not None:
            await self._notify(collection, doc_id, before, None)

    async def query(self, collection, filters=None, limit=None):
        found = [(doc_id, copy.deepcopy(data)) for doc_id, data in self._docs(collection).items()
                 if matches(data, filters)]
        return found[:limit] if limit is not None else found

    async def subscribe(self, collection, filters, on_snapshot, doc_id=None):
        listener = _Listener(collection, filters, doc_id, on_snapshot)
        self._listeners.append(listener)
        listener.subscription = Subscription(lambda: self._remove(listener))
        await self._deliver(listener)
        return listener.subscription

    async def collection_names(self):
        return sorted(self._collections)

    def _remove(self, listener: _Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _snapshot(self, listener: _Listener) -> Snapshot:
        if listener.doc_id is not None:
            data = await self.get_document(listener.collection, listener.doc_id)
            return [(listener.doc_id, data)] if data is not None else []
        return await self.query(listener.collection, listener.filters)

    async def _deliver(self, listener: _Listener) -> None:
        snapshot = await self._snapshot(listener)
        try:
            await _call_handler(listener.handler, snapshot)
        except Exception:
            _LOGGER.exception("Snapshot handler failed for %s", listener.collection)

    async def _notify(self, collection, doc_id, before, after) -> None:
        for listener in list(self._listeners):
            if listener.collection != collection or not listener.subscription.active:
                continue
            if listener.doc_id is not None:
                affected = listener.doc_id == doc_id
            else:
                affected = matches(before, listener.filters) or matches(after, listener.filters)
            if affected:
                await self._deliver(listener)


# ---------------------------
# MongoDB store
# ---------------------------

def _key(doc_id: str) -> Union[ObjectId, str]:
    return ObjectId(doc_id) if ObjectId.is_valid(doc_id) else doc_id


def _split(doc: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
    d = dict(doc)
    return str(d.pop("_id")), d


@contextmanager
def _backend(operation: str):
    try:
        yield
    except PyMongoError as e:
        _LOGGER.warning("MongoDB %s failed: %s", operation, e)
        raise TransientBackendError(f"Database error during {operation}")


class MongoStore(DocumentStore):
    name = "mongodb"

    def __init__(self, url: str, database_name: str):
        self.client = AsyncMongoClient(url, tz_aware=True)
        self.db = self.client[database_name]
        self.name = database_name

    async def get_document(self, collection, doc_id):
        with _backend("get"):
            doc = await self.db[collection].find_one({"_id": _key(doc_id)})
        return _split(doc)[1] if doc else None

    async def set_document(self, collection, doc_id, data, merge=False):
        with _backend("set"):
            if merge:
                await self.db[collection].update_one({"_id": _key(doc_id)}, {"$set": data}, upsert=True)
            else:
                await self.db[collection].replace_one({"_id": _key(doc_id)}, data, upsert=True)

    async def update_document(self, collection, doc_id, fields, expected=None):
        query = {"_id": _key(doc_id), **(expected or {})}
        with _backend("update"):
            result = await self.db[collection].update_one(query, {"$set": fields})
            if result.matched_count:
                return True
            exists = await self.db[collection].count_documents({"_id": _key(doc_id)}, limit=1)
        if not exists:
            raise NotFoundError(f"{collection}/{doc_id} not found")
        return False

    async def add_document(self, collection, data):
        with _backend("insert"):
            result = await self.db[collection].insert_one(dict(data))
        return str(result.inserted_id)

    async def increment_field(self, collection, doc_id, field, delta):
        with _backend("increment"):
            doc = await self.db[collection].find_one_and_update(
                {"_id": _key(doc_id)},
                {"$inc": {field: delta}},
                projection={"_id": 1},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise NotFoundError(f"{collection}/{doc_id} not found")

    async def append_to_field(self, collection, doc_id, field, value):
        with _backend("push"):
            result = await self.db[collection].update_one({"_id": _key(doc_id)}, {"$push": {field: value}})
        if not result.matched_count:
            raise NotFoundError(f"{collection}/{doc_id} not found")

    async def delete_document(self, collection, doc_id):
        with _backend("delete"):
            await self.db[collection].delete_one({"_id": _key(doc_id)})

    async def query(self, collection, filters=None, limit=None):
        with _backend("query"):
            cursor = self.db[collection].find(filters or {})
            if limit is not None:
                cursor = cursor.limit(limit)
            return [_split(doc) async for doc in cursor]

    async def subscribe(self, collection, filters, on_snapshot, doc_id=None):
        # The stream is opened before the initial read so no write between the two is missed.
        pipeline = [{"$match": {"documentKey._id": _key(doc_id)}}] if doc_id is not None else []
        with _backend("watch"):
            stream = await self.db[collection].watch(pipeline)
        try:
            await self._deliver(collection, filters, doc_id, on_snapshot)
        except TransientBackendError:
            await stream.close()
            raise
        task = asyncio.create_task(self._follow(stream, collection, filters, doc_id, on_snapshot))
        subscription = Subscription(task.cancel)
        task.add_done_callback(lambda _task: subscription.end())
        return subscription

    async def collection_names(self):
        with _backend("list collections"):
            return await self.db.list_collection_names()

    async def _deliver(self, collection, filters, doc_id, on_snapshot) -> None:
        if doc_id is not None:
            data = await self.get_document(collection, doc_id)
            snapshot = [(doc_id, data)] if data is not None else []
        else:
            snapshot = await self.query(collection, filters)
        try:
            await _call_handler(on_snapshot, snapshot)
        except Exception:
            _LOGGER.exception("Snapshot handler failed for %s", collection)

    async def _follow(self, stream, collection, filters, doc_id, on_snapshot) -> None:
        try:
            async with stream:
                async for _change in stream:
                    await self._deliver(collection, filters, doc_id, on_snapshot)
        except (PyMongoError, TransientBackendError) as e:
            _LOGGER.warning("Change stream on %s stopped: %s", collection, e)
            try:
                await _call_handler(on_snapshot, [])
            except Exception:
                _LOGGER.exception("Snapshot handler failed for %s", collection)


# ---------------------------
# Helpers
# ---------------------------

async def create_document(store: DocumentStore, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        doc = data.to_document() if hasattr(data, "to_document") else data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    return await store.add_document(collection, doc)


async def get_documents(store: DocumentStore, collection: str, filters: Optional[Dict[str, Any]] = None,
                        limit: Optional[int] = None) -> Snapshot:
    return await store.query(collection, filters, limit)


def connect() -> Optional[DocumentStore]:
    url = os.getenv("DATABASE_URL")
    name = os.getenv("DATABASE_NAME")
    if not url or not name:
        _LOGGER.warning("DATABASE_URL/DATABASE_NAME not set; no document store configured")
        return None
    return MongoStore(url, name)
