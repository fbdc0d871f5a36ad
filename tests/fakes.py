# tests/fakes.py
"""
In-memory stand-ins for the Motor objects the engine touches.

Covers the query and update operators the engine uses ($in, $or, $lte, $gt,
$exists; $inc, $set, $setOnInsert, $unset, $push with $each/$slice), cursors
with sort/limit/to_list, and sessions whose transactions roll back every
collection when the block raises.

Failure injection: `collection.fail("insert_one")` makes the next call raise
a pymongo error (or pass `exc=` / `times=`).
"""
import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import OperationFailure, WriteError

from hipop_billing.billing.base import AuditLogSink, NotificationSink
from hipop_billing.config.database import SUBSCRIPTIONS

_MISSING = object()


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def _unset_path(doc: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _match_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$exists":
                if (value is not _MISSING) != bool(arg):
                    return False
            elif op == "$in":
                if value is _MISSING or value not in arg:
                    return False
            elif op == "$ne":
                if value == arg:
                    return False
            elif op == "$eq":
                if value is _MISSING or value != arg:
                    return False
            elif op in ("$lt", "$lte", "$gt", "$gte"):
                if value is _MISSING or value is None:
                    return False
                if op == "$lt" and not value < arg:
                    return False
                if op == "$lte" and not value <= arg:
                    return False
                if op == "$gt" and not value > arg:
                    return False
                if op == "$gte" and not value >= arg:
                    return False
            else:
                raise NotImplementedError(f"query operator {op}")
        return True
    if isinstance(value, list) and not isinstance(condition, list):
        return condition in value
    return value is not _MISSING and value == condition


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif not _match_condition(_get_path(doc, key), condition):
            return False
    return True


def _paths_overlap(a: str, b: str) -> bool:
    return a == b or a.startswith(b + ".") or b.startswith(a + ".")


def _check_conflicts(update: Dict[str, Any]) -> None:
    """MongoDB refuses an update that names one path (or a path and its prefix) twice."""
    seen: List[str] = []
    for fields in update.values():
        for path in fields:
            for other in seen:
                if _paths_overlap(path, other):
                    raise WriteError(
                        f"Updating the path '{path}' would create a conflict at '{other}'", 40, {}
                    )
            seen.append(path)


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any], *, is_insert: bool) -> None:
    _check_conflicts(update)
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set_path(doc, path, copy.deepcopy(value))
        elif op == "$setOnInsert":
            if is_insert:
                for path, value in fields.items():
                    _set_path(doc, path, copy.deepcopy(value))
        elif op == "$inc":
            for path, amount in fields.items():
                current = _get_path(doc, path)
                _set_path(doc, path, (0 if current is _MISSING else current) + amount)
        elif op == "$unset":
            for path in fields:
                _unset_path(doc, path)
        elif op == "$push":
            for path, push in fields.items():
                current = _get_path(doc, path)
                items = [] if current is _MISSING else list(current)
                if isinstance(push, dict) and "$each" in push:
                    items.extend(copy.deepcopy(push["$each"]))
                    if "$slice" in push:
                        limit = push["$slice"]
                        items = items[limit:] if limit < 0 else items[:limit]
                else:
                    items.append(copy.deepcopy(push))
                _set_path(doc, path, items)
        else:
            raise NotImplementedError(f"update operator {op}")


def _project(doc: Optional[Dict[str, Any]], projection: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    if not projection:
        return copy.deepcopy(doc)
    wanted = {path.split(".")[0] for path, flag in projection.items() if flag}
    wanted.add("_id")
    return {k: copy.deepcopy(v) for k, v in doc.items() if k in wanted}


def _sort_key(value: Any):
    return (0, None) if value is _MISSING or value is None else (1, value)


class InsertOneResult:
    def __init__(self, inserted_id: Any):
        self.inserted_id = inserted_id


class UpdateResult:
    def __init__(self, matched_count: int, modified_count: int, upserted_id: Any = None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id


class FakeCursor:
    def __init__(
        self,
        docs: List[Dict[str, Any]],
        projection: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
    ):
        self._docs = docs
        self._projection = projection
        self._error = error
        self._sort: List[tuple] = []
        self._limit = 0

    def sort(self, key_or_list, direction=None) -> "FakeCursor":
        if isinstance(key_or_list, str):
            self._sort = [(key_or_list, direction or 1)]
        else:
            self._sort = list(key_or_list)
        return self

    def limit(self, n: int) -> "FakeCursor":
        self._limit = n
        return self

    def _results(self) -> List[Dict[str, Any]]:
        docs = list(self._docs)
        for key, direction in reversed(self._sort):
            docs.sort(key=lambda d: _sort_key(_get_path(d, key)), reverse=direction < 0)
        if self._limit:
            docs = docs[: self._limit]
        return [_project(d, self._projection) for d in docs]

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        # Motor cursors do no I/O until iterated
        if self._error is not None:
            raise self._error
        results = self._results()
        return results if length is None else results[:length]

    def __aiter__(self):
        self._iter = iter(self._results())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.indexes: List[Any] = []
        self._failures: Dict[str, List[Any]] = {}

    # --- test helpers -------------------------------------------------

    def fail(self, method: str, exc: Optional[BaseException] = None, times: int = 1) -> None:
        """Make the next `times` calls to `method` raise `exc`."""
        error = exc or OperationFailure(f"injected failure in {self.name}.{method}")
        self._failures.setdefault(method, []).extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def get(self, _id: Any) -> Optional[Dict[str, Any]]:
        for doc in self.docs:
            if doc.get("_id") == _id:
                return doc
        return None

    # --- Motor API ----------------------------------------------------

    def _find_first(self, query: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        for doc in self.docs:
            if matches(doc, query):
                return doc
        return None

    def _upsert_doc(self, query: Dict[str, Any]) -> Dict[str, Any]:
        doc: Dict[str, Any] = {}
        for key, value in query.items():
            if key.startswith("$") or (isinstance(value, dict) and any(k.startswith("$") for k in value)):
                continue
            _set_path(doc, key, copy.deepcopy(value))
        doc.setdefault("_id", ObjectId())
        return doc

    async def find_one(self, query=None, projection=None, session=None):
        self._maybe_fail("find_one")
        return _project(self._find_first(query), projection)

    def find(self, query=None, projection=None, session=None) -> FakeCursor:
        pending = self._failures.get("find")
        error = pending.pop(0) if pending else None
        return FakeCursor([d for d in self.docs if matches(d, query)], projection, error)

    async def count_documents(self, query, session=None) -> int:
        self._maybe_fail("count_documents")
        return sum(1 for d in self.docs if matches(d, query))

    async def insert_one(self, doc, session=None) -> InsertOneResult:
        self._maybe_fail("insert_one")
        doc.setdefault("_id", ObjectId())
        if self.get(doc["_id"]) is not None:
            raise OperationFailure("E11000 duplicate key error", code=11000)
        self.docs.append(copy.deepcopy(doc))
        return InsertOneResult(doc["_id"])

    async def update_one(self, query, update, upsert=False, session=None) -> UpdateResult:
        self._maybe_fail("update_one")
        doc = self._find_first(query)
        if doc is not None:
            _apply_update(doc, update, is_insert=False)
            return UpdateResult(1, 1)
        if not upsert:
            return UpdateResult(0, 0)
        doc = self._upsert_doc(query)
        _apply_update(doc, update, is_insert=True)
        self.docs.append(doc)
        return UpdateResult(0, 0, upserted_id=doc["_id"])

    async def replace_one(self, query, replacement, upsert=False, session=None) -> UpdateResult:
        self._maybe_fail("replace_one")
        doc = self._find_first(query)
        if doc is not None:
            _id = doc["_id"]
            doc.clear()
            doc.update(copy.deepcopy(replacement))
            doc["_id"] = _id
            return UpdateResult(1, 1)
        if not upsert:
            return UpdateResult(0, 0)
        doc = self._upsert_doc(query)
        doc.update(copy.deepcopy(replacement))
        self.docs.append(doc)
        return UpdateResult(0, 0, upserted_id=doc["_id"])

    async def find_one_and_update(
        self,
        query,
        update,
        upsert=False,
        return_document=ReturnDocument.BEFORE,
        projection=None,
        session=None,
    ):
        self._maybe_fail("find_one_and_update")
        doc = self._find_first(query)
        if doc is None:
            if not upsert:
                return None
            if self.get(query.get("_id", _MISSING)) is not None:
                raise OperationFailure("E11000 duplicate key error", code=11000)
            doc = self._upsert_doc(query)
            _apply_update(doc, update, is_insert=True)
            self.docs.append(doc)
            return _project(doc, projection) if return_document == ReturnDocument.AFTER else None

        before = copy.deepcopy(doc)
        _apply_update(doc, update, is_insert=False)
        return _project(doc if return_document == ReturnDocument.AFTER else before, projection)

    async def create_index(self, keys, **kwargs) -> str:
        self._maybe_fail("create_index")
        self.indexes.append(keys)
        return "_".join(f"{k}_{d}" for k, d in keys) if isinstance(keys, list) else str(keys)


class FakeTransaction:
    def __init__(self, session: "FakeSession"):
        self.session = session
        self._snapshot: Dict[str, List[Dict[str, Any]]] = {}

    async def __aenter__(self):
        db = self.session.client.database
        self._snapshot = {name: copy.deepcopy(coll.docs) for name, coll in db.collections.items()}
        self.session.in_transaction = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.session.in_transaction = False
        db = self.session.client.database
        if exc_type is not None:
            self.session.client.aborted += 1
            for name, coll in db.collections.items():
                coll.docs = self._snapshot.get(name, [])
            return False
        self.session.client.committed += 1
        return False


class FakeSession:
    def __init__(self, client: "FakeClient"):
        self.client = client
        self.in_transaction = False

    def start_transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeClient:
    def __init__(self, database: "FakeDatabase"):
        self.database = database
        self.committed = 0
        self.aborted = 0

    async def start_session(self) -> FakeSession:
        return FakeSession(self)


class FakeDatabase:
    def __init__(self, name: str = "hipop_test"):
        self.name = name
        self.collections: Dict[str, FakeCollection] = {}
        self.client = FakeClient(self)

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


# --- collaborator doubles ---------------------------------------------------

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class RecordingNotifier(NotificationSink):
    def __init__(self, deliver: bool = True) -> None:
        self.deliver = deliver
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> bool:
        self.sent.append({"user_id": user_id, "kind": kind, **payload})
        return self.deliver


class RecordingAuditLog(AuditLogSink):
    def __init__(self) -> None:
        self.entries: List[Dict[str, Any]] = []

    async def record(self, action: str, details: Dict[str, Any]) -> None:
        self.entries.append({"action": action, **details})


def add_subscription(
    db: FakeDatabase,
    user_id: str,
    tier: str,
    *,
    limits: Optional[Dict[str, int]] = None,
    features: Optional[Dict[str, bool]] = None,
    status: str = "active",
    created_at: Optional[datetime] = None,
    record_id: Optional[str] = None,
) -> Dict[str, Any]:
    doc = {
        "user_id": user_id,
        "tier": tier,
        "status": status,
        "limits": limits or {},
        "features": features or {},
        "created_at": created_at or datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    doc["_id"] = record_id or ObjectId()
    db[SUBSCRIPTIONS].docs.append(doc)
    return doc
