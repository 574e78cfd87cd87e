"""
Document store access.

Two backends implement ReportStore: MongoReportStore (pymongo) for
deployments and MemoryReportStore when DATABASE_URL is not set. Report
mutations always go through atomic_update so field changes and history
appends land in one write.
"""
from __future__ import annotations

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from civic_console import settings
from civic_console.exceptions import SubscriptionError
from civic_console.timestamps import to_millis

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[List[Dict[str, Any]]], None]
ErrorCallback = Callable[[SubscriptionError], None]


@dataclass(frozen=True)
class ReportQuery:
    """
    Query pushed down to the store.

    any_of holds equality terms that are OR'd together; an empty tuple
    selects every report. Results are ordered newest first.
    """
    any_of: Tuple[Tuple[str, Any], ...] = ()
    limit: Optional[int] = None

    def matches(self, doc: Dict[str, Any]) -> bool:
        if not self.any_of:
            return True
        return any(doc.get(field) == value for field, value in self.any_of)

    def to_mongo(self) -> Dict[str, Any]:
        if not self.any_of:
            return {}
        terms = [{field: value} for field, value in self.any_of]
        return terms[0] if len(terms) == 1 else {"$or": terms}


class Subscription:
    def __init__(self, on_close: Optional[Callable[[], None]] = None):
        self._on_close = on_close
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()


def _with_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def _newest_first(doc: Dict[str, Any]):
    ms = to_millis(doc.get("createdAt"))
    return (ms is not None, ms or 0)


class ReportStore(ABC):
    """Narrow interface the console needs from the document store."""

    @abstractmethod
    def create_document(self, collection_name: str, data: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    def set_document(self, collection_name: str, doc_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def get_document(self, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_documents(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                      limit: Optional[int] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def find_reports(self, query: ReportQuery) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def atomic_update(self, report_id: str, fields: Dict[str, Any],
                      history_append: Optional[Dict[str, Any]] = None) -> bool:
        """Set fields and append one history entry in a single write.

        Returns False when no report has the given id.
        """

    @abstractmethod
    def subscribe(self, query: ReportQuery, on_snapshot: SnapshotCallback,
                  on_error: Optional[ErrorCallback] = None) -> Subscription:
        """Deliver the current result set now and again after every change."""

    def describe(self) -> Dict[str, Any]:
        return {"store": type(self).__name__}


# ---------- MongoDB ----------

def _id_filter(doc_id: str) -> Dict[str, Any]:
    from bson import ObjectId

    if ObjectId.is_valid(doc_id):
        return {"_id": {"$in": [ObjectId(doc_id), doc_id]}}
    return {"_id": doc_id}


class _ChangeStreamWatcher(threading.Thread):
    def __init__(self, store: "MongoReportStore", query: ReportQuery,
                 on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback]):
        super().__init__(daemon=True, name="report-change-stream")
        self._store = store
        self._query = query
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._closed = threading.Event()

    def close(self) -> None:
        self._closed.set()

    def run(self) -> None:
        from pymongo.errors import PyMongoError

        collection = self._store.db[settings.REPORTS_COLLECTION]
        try:
            with collection.watch(max_await_time_ms=1000) as stream:
                while not self._closed.is_set() and stream.alive:
                    change = stream.try_next()
                    if change is None or self._closed.is_set():
                        continue
                    self._on_snapshot(self._store.find_reports(self._query))
        except PyMongoError as e:
            if self._closed.is_set():
                return
            logger.error("Report change stream failed: %s", e)
            if self._on_error is not None:
                self._on_error(SubscriptionError(f"Live updates unavailable: {str(e)[:80]}"))


class MongoReportStore(ReportStore):
    def __init__(self, url: str, name: str):
        from pymongo import MongoClient

        self.client = MongoClient(url, tz_aware=True)
        self.db = self.client[name]

    def create_document(self, collection_name, data):
        doc = dict(data)
        now = datetime.now(timezone.utc)
        doc.setdefault("createdAt", now)
        doc.setdefault("updatedAt", now)
        result = self.db[collection_name].insert_one(doc)
        return str(result.inserted_id)

    def set_document(self, collection_name, doc_id, data):
        self.db[collection_name].replace_one({"_id": doc_id}, dict(data), upsert=True)

    def get_document(self, collection_name, doc_id):
        doc = self.db[collection_name].find_one(_id_filter(doc_id))
        return _with_id(doc) if doc else None

    def get_documents(self, collection_name, filter_dict=None, limit=None):
        cursor = self.db[collection_name].find(filter_dict or {})
        if limit:
            cursor = cursor.limit(limit)
        return [_with_id(d) for d in cursor]

    def find_reports(self, query):
        cursor = self.db[settings.REPORTS_COLLECTION].find(query.to_mongo()).sort("createdAt", -1)
        if query.limit:
            cursor = cursor.limit(query.limit)
        return [_with_id(d) for d in cursor]

    def atomic_update(self, report_id, fields, history_append=None):
        update: Dict[str, Any] = {"$set": dict(fields)}
        if history_append is not None:
            update["$push"] = {"statusHistory": history_append}
        res = self.db[settings.REPORTS_COLLECTION].update_one(_id_filter(report_id), update)
        return res.matched_count > 0

    def subscribe(self, query, on_snapshot, on_error=None):
        on_snapshot(self.find_reports(query))
        watcher = _ChangeStreamWatcher(self, query, on_snapshot, on_error)
        watcher.start()
        return Subscription(on_close=watcher.close)

    def describe(self):
        info = {"store": "mongodb", "database": "connected", "collections": []}
        try:
            info["collections"] = self.db.list_collection_names()[:10]
        except Exception as e:
            info["database"] = f"error: {str(e)[:80]}"
        return info


# ---------- In-memory ----------

class MemoryReportStore(ReportStore):
    """Process-local store; subscribers are notified synchronously after each write."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: Dict[int, Tuple[ReportQuery, SnapshotCallback]] = {}
        self._next_listener = 0
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def create_document(self, collection_name, data):
        doc = copy.deepcopy(dict(data))
        doc_id = str(doc.pop("id", None) or uuid.uuid4().hex)
        if collection_name == settings.REPORTS_COLLECTION:
            now = datetime.now(timezone.utc)
            doc.setdefault("createdAt", now)
            doc.setdefault("updatedAt", now)
        with self._lock:
            self._collection(collection_name)[doc_id] = doc
        if collection_name == settings.REPORTS_COLLECTION:
            self._notify()
        return doc_id

    def set_document(self, collection_name, doc_id, data):
        with self._lock:
            self._collection(collection_name)[doc_id] = copy.deepcopy(dict(data))

    def get_document(self, collection_name, doc_id):
        with self._lock:
            doc = self._collection(collection_name).get(doc_id)
            if doc is None:
                return None
            return {"id": doc_id, **copy.deepcopy(doc)}

    def get_documents(self, collection_name, filter_dict=None, limit=None):
        filter_dict = filter_dict or {}
        with self._lock:
            docs = [
                {"id": doc_id, **copy.deepcopy(doc)}
                for doc_id, doc in self._collection(collection_name).items()
                if all(doc.get(k) == v for k, v in filter_dict.items())
            ]
        return docs[:limit] if limit else docs

    def find_reports(self, query):
        docs = [d for d in self.get_documents(settings.REPORTS_COLLECTION) if query.matches(d)]
        docs.sort(key=_newest_first, reverse=True)
        return docs[:query.limit] if query.limit else docs

    def atomic_update(self, report_id, fields, history_append=None):
        with self._lock:
            doc = self._collection(settings.REPORTS_COLLECTION).get(report_id)
            if doc is None:
                return False
            doc.update(copy.deepcopy(fields))
            if history_append is not None:
                doc.setdefault("statusHistory", []).append(copy.deepcopy(history_append))
        self._notify()
        return True

    def subscribe(self, query, on_snapshot, on_error=None):
        with self._lock:
            key = self._next_listener
            self._next_listener += 1
            self._listeners[key] = (query, on_snapshot)
        on_snapshot(self.find_reports(query))

        def _remove():
            with self._lock:
                self._listeners.pop(key, None)

        return Subscription(on_close=_remove)

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for query, callback in listeners:
            callback(self.find_reports(query))

    def describe(self):
        with self._lock:
            names = sorted(self._collections)[:10]
        return {"store": "memory", "database": "connected", "collections": names}


def get_store() -> ReportStore:
    if settings.DATABASE_URL:
        return MongoReportStore(settings.DATABASE_URL, settings.DATABASE_NAME)
    logger.warning("DATABASE_URL not set; using in-memory report store")
    return MemoryReportStore()
