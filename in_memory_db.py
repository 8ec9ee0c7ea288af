import asyncio
import copy
import math
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple


def _get_value(doc: Dict[str, Any], dotted_key: str) -> Any:
    """Support dotted paths like 'agent_info.id'."""
    parts = dotted_key.split(".")
    value: Any = doc
    for part in parts:
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return None
    return value


def _has_value(doc: Dict[str, Any], dotted_key: str) -> bool:
    value: Any = doc
    for part in dotted_key.split("."):
        if not isinstance(value, dict) or part not in value:
            return False
        value = value[part]
    return True


def _compare(actual: Any, op: str, bound: Any) -> bool:
    if actual is None:
        return False
    try:
        if op == "$gte":
            return actual >= bound
        if op == "$gt":
            return actual > bound
        if op == "$lte":
            return actual <= bound
        return actual < bound
    except TypeError:
        return False


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    """Very small subset of Mongo style matching used in this API."""
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in expected):
                return False
            continue

        actual = _get_value(doc, key)
        if isinstance(expected, dict):
            if "$regex" in expected:
                pattern = expected["$regex"]
                flags = re.IGNORECASE if expected.get("$options", "") == "i" else 0
                if not isinstance(actual, str) or not re.search(pattern, actual, flags):
                    return False
            for op in ("$gte", "$gt", "$lte", "$lt"):
                if op in expected and not _compare(actual, op, expected[op]):
                    return False
            if "$in" in expected and actual not in expected["$in"]:
                return False
            if "$nin" in expected and actual in expected["$nin"]:
                return False
            if "$ne" in expected and actual == expected["$ne"]:
                return False
            if "$exists" in expected and _has_value(doc, key) != bool(expected["$exists"]):
                return False
        else:
            if actual != expected:
                return False
    return True


def _apply_projection(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    if not projection:
        return copy.deepcopy(doc)

    result = copy.deepcopy(doc)
    for key, include in projection.items():
        if include == 0 and key in result:
            result.pop(key, None)
    return result


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    new_doc = copy.deepcopy(doc)
    for key, value in update.get("$set", {}).items():
        new_doc[key] = copy.deepcopy(value)
    for key in update.get("$unset", {}):
        new_doc.pop(key, None)
    for key, amount in update.get("$inc", {}).items():
        new_doc[key] = (new_doc.get(key) or 0) + amount
    for key, value in update.get("$addToSet", {}).items():
        items = list(new_doc.get(key) or [])
        if value not in items:
            items.append(value)
        new_doc[key] = items
    for key, value in update.get("$pull", {}).items():
        new_doc[key] = [item for item in (new_doc.get(key) or []) if item != value]
    return new_doc


def _sort_key(value: Any) -> Tuple[int, Any]:
    # None sorts before everything, like Mongo's null ordering
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return (0, 0)
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value))


class UpdateResult:
    def __init__(self, matched_count: int, modified_count: int, upserted_id: Optional[str] = None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id


class InsertOneResult:
    def __init__(self, inserted_id: str):
        self.inserted_id = inserted_id


class DeleteResult:
    def __init__(self, deleted_count: int):
        self.deleted_count = deleted_count


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self.docs = docs

    def sort(self, key: str, direction: int = 1) -> "FakeCursor":
        self.docs = sorted(self.docs, key=lambda doc: _sort_key(_get_value(doc, key)), reverse=direction < 0)
        return self

    def limit(self, count: int) -> "FakeCursor":
        if count:
            self.docs = self.docs[:count]
        return self

    async def to_list(self, limit: Optional[int]) -> List[Dict[str, Any]]:
        if limit is None:
            return list(self.docs)
        return self.docs[:limit]


class FakeChangeStream:
    """Async iterator over change events, shaped like motor's change streams."""

    def __init__(self, collection: "FakeCollection"):
        self._collection = collection
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    def _push(self, event: Dict[str, Any]) -> None:
        self._queue.put_nowait(event)

    async def __aenter__(self) -> "FakeChangeStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    def __aiter__(self) -> "FakeChangeStream":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        return await self._queue.get()

    async def next(self) -> Dict[str, Any]:
        return await self.__anext__()

    def close(self) -> None:
        self._collection._streams.discard(self)


class FakeCollection:
    def __init__(self, initial: Optional[List[Dict[str, Any]]] = None):
        self.data: List[Dict[str, Any]] = copy.deepcopy(initial) if initial else []
        self._streams: set = set()

    def _notify(self, operation: str, doc_id: Any) -> None:
        event = {"operationType": operation, "documentKey": {"id": doc_id}}
        for stream in list(self._streams):
            stream._push(event)

    def watch(self, *args: Any, **kwargs: Any) -> FakeChangeStream:
        stream = FakeChangeStream(self)
        self._streams.add(stream)
        return stream

    async def find_one(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None) -> Optional[Dict[str, Any]]:
        for doc in self.data:
            if _matches(doc, query):
                return _apply_projection(doc, projection)
        return None

    async def insert_one(self, document: Dict[str, Any]) -> InsertOneResult:
        stored = copy.deepcopy(document)
        stored.setdefault("id", str(uuid.uuid4()))
        self.data.append(stored)
        self._notify("insert", stored["id"])
        return InsertOneResult(stored["id"])

    async def delete_one(self, query: Dict[str, Any]) -> DeleteResult:
        for idx, doc in enumerate(self.data):
            if _matches(doc, query):
                del self.data[idx]
                self._notify("delete", doc.get("id"))
                return DeleteResult(1)
        return DeleteResult(0)

    async def delete_many(self, query: Dict[str, Any]) -> DeleteResult:
        removed = [doc for doc in self.data if _matches(doc, query)]
        self.data = [doc for doc in self.data if not _matches(doc, query)]
        for doc in removed:
            self._notify("delete", doc.get("id"))
        return DeleteResult(len(removed))

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False) -> UpdateResult:
        for idx, doc in enumerate(self.data):
            if _matches(doc, query):
                new_doc = _apply_update(doc, update)
                modified = new_doc != doc
                self.data[idx] = new_doc
                if modified:
                    self._notify("update", new_doc.get("id"))
                return UpdateResult(1, int(modified))
        if upsert:
            seed = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
            result = await self.insert_one(_apply_update(seed, update))
            return UpdateResult(0, 0, result.inserted_id)
        return UpdateResult(0, 0)

    async def update_many(self, query: Dict[str, Any], update: Dict[str, Any]) -> UpdateResult:
        matched = modified = 0
        for idx, doc in enumerate(self.data):
            if _matches(doc, query):
                matched += 1
                new_doc = _apply_update(doc, update)
                if new_doc != doc:
                    modified += 1
                    self.data[idx] = new_doc
                    self._notify("update", new_doc.get("id"))
        return UpdateResult(matched, modified)

    async def count_documents(self, query: Dict[str, Any]) -> int:
        return len([doc for doc in self.data if _matches(doc, query)])

    def find(self, query: Optional[Dict[str, Any]] = None, projection: Optional[Dict[str, int]] = None) -> "FakeCursor":
        query = query or {}
        filtered = [_apply_projection(doc, projection) for doc in self.data if _matches(doc, query)]
        return FakeCursor(filtered)


class InMemoryDB:
    """Tiny drop-in replacement for motor's database object used in this app."""

    def __init__(
        self,
        listings: Optional[List[Dict[str, Any]]] = None,
        users: Optional[List[Dict[str, Any]]] = None,
        featured: Optional[List[Dict[str, Any]]] = None,
    ):
        self.listings = FakeCollection(listings)
        self.users = FakeCollection(users)
        self.sessions = FakeCollection([])
        self.landlord_applications = FakeCollection([])
        self.featured_properties = FakeCollection(featured)
        self.transactions = FakeCollection([])
        self.mpesa_callbacks = FakeCollection([])
        self.platform_settings = FakeCollection([])


async def fetch_single_document(collection: Any, field: str, value: Any) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Look up the first document whose ``field`` equals ``value``."""
    doc = await collection.find_one({field: value}, {"_id": 0})
    if not doc:
        return None, None
    return doc, doc.get("id")
