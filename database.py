"""
Record store for the Video Rentals API.

Collections hold plain documents keyed by a bson ObjectId under "_id":
- customers
- genres
- movies  (embeds a genre snapshot)
- users
- rentals (embeds customer and movie snapshots)

Every write that has to land together with another one goes through a
`Transaction`: writes are staged, then committed as one unit via
`RecordStore.apply` or dropped with `abort`. `MongoStore` backs this with a
MongoDB multi-document transaction; `MemoryStore` keeps everything in process.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger("video_rentals.database")

COLLECTIONS = ("customers", "genres", "movies", "users", "rentals")
UNIQUE_FIELDS = {"users": ("email",)}

# Attempts for a transaction hit by TransientTransactionError, and for a
# commit answered with UnknownTransactionCommitResult.
TRANSACTION_ATTEMPTS = 3

Document = Dict[str, Any]
Sort = Sequence[Tuple[str, int]]


class StoreError(Exception):
    """A write could not be committed."""


class WriteConflict(StoreError):
    """A staged conditional update matched no document at commit time."""

    def __init__(self, write: "Write"):
        super().__init__(f"Conditional update on {write.collection} matched nothing: {write.filter}")
        self.write = write


class TransientConflict(StoreError):
    """Concurrent writers kept aborting the transaction. Nothing was written."""


class DuplicateKey(StoreError):
    """An insert collided with a unique field."""


@dataclass
class Write:
    kind: str  # "insert" | "update"
    collection: str
    document: Optional[Document] = None
    filter: Optional[Document] = None
    update: Optional[Document] = None


class Transaction:
    """Begin / stage writes / commit-or-abort.

    Conditional updates must match exactly one document when the batch is
    applied, otherwise the whole batch is discarded with `WriteConflict`.
    """

    def __init__(self, store: "RecordStore"):
        self._store = store
        self._writes: List[Write] = []
        self.state = "open"

    @property
    def writes(self) -> List[Write]:
        return list(self._writes)

    def _ensure_open(self) -> None:
        if self.state != "open":
            raise StoreError(f"Transaction already {self.state}")

    def insert(self, collection: str, document: Document) -> Document:
        self._ensure_open()
        doc = {"_id": ObjectId(), **document}
        self._writes.append(Write("insert", collection, document=doc))
        return doc

    def update(self, collection: str, filter: Document, update: Document) -> None:
        self._ensure_open()
        self._writes.append(Write("update", collection, filter=filter, update=update))

    def commit(self) -> None:
        self._ensure_open()
        try:
            self._store.apply(self._writes)
        except StoreError:
            self.state = "aborted"
            raise
        self.state = "committed"

    def abort(self) -> None:
        if self.state == "open":
            self._writes.clear()
            self.state = "aborted"

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.abort()
            return False
        self.commit()
        return False


class RecordStore(ABC):
    @abstractmethod
    def find(self, collection: str, filter: Optional[Document] = None, sort: Optional[Sort] = None) -> List[Document]:
        ...

    @abstractmethod
    def find_one(self, collection: str, filter: Document) -> Optional[Document]:
        ...

    @abstractmethod
    def insert(self, collection: str, document: Document) -> Document:
        ...

    @abstractmethod
    def update(self, collection: str, filter: Document, update: Document) -> Optional[Document]:
        """Update one matching document and return it as it is after the write."""

    @abstractmethod
    def delete(self, collection: str, filter: Document) -> Optional[Document]:
        """Remove one matching document and return it."""

    @abstractmethod
    def apply(self, writes: Sequence[Write]) -> None:
        """Apply every write or none of them."""

    @abstractmethod
    def collection_names(self) -> List[str]:
        ...

    def transaction(self) -> Transaction:
        return Transaction(self)

    def setup(self) -> None:
        pass

    def close(self) -> None:
        pass


class MongoStore(RecordStore):
    """pymongo-backed store. Transactions need a replica set or sharded cluster."""

    def __init__(self, client: MongoClient, database_name: str):
        self.client = client
        self.db = client[database_name]

    @classmethod
    def from_settings(cls, settings) -> "MongoStore":
        client = MongoClient(settings.database_url, tz_aware=True)
        return cls(client, settings.database_name)

    def setup(self) -> None:
        self.db["users"].create_index([("email", ASCENDING)], unique=True)
        logger.info("Connected to %s", self.db.name)

    def close(self) -> None:
        self.client.close()

    def find(self, collection, filter=None, sort=None):
        cursor = self.db[collection].find(filter or {})
        if sort:
            cursor = cursor.sort(list(sort))
        return list(cursor)

    def find_one(self, collection, filter):
        return self.db[collection].find_one(filter)

    def insert(self, collection, document):
        doc = dict(document)
        try:
            res = self.db[collection].insert_one(doc)
        except DuplicateKeyError as exc:
            raise DuplicateKey(str(exc)) from exc
        doc["_id"] = res.inserted_id
        return doc

    def update(self, collection, filter, update):
        return self.db[collection].find_one_and_update(filter, update, return_document=ReturnDocument.AFTER)

    def delete(self, collection, filter):
        return self.db[collection].find_one_and_delete(filter)

    def collection_names(self):
        return self.db.list_collection_names()

    def apply(self, writes):
        for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
            try:
                with self.client.start_session() as session:
                    self._run_transaction(session, writes)
                return
            except DuplicateKeyError as exc:
                raise DuplicateKey(str(exc)) from exc
            except PyMongoError as exc:
                if not exc.has_error_label("TransientTransactionError"):
                    raise StoreError(str(exc)) from exc
                if attempt == TRANSACTION_ATTEMPTS:
                    raise TransientConflict(str(exc)) from exc
                logger.warning("Transient transaction error, retrying (%d/%d): %s",
                               attempt, TRANSACTION_ATTEMPTS, exc)

    def _run_transaction(self, session, writes):
        session.start_transaction()
        try:
            for write in writes:
                coll = self.db[write.collection]
                if write.kind == "insert":
                    coll.insert_one(write.document, session=session)
                    continue
                res = coll.update_one(write.filter, write.update, session=session)
                if res.matched_count != 1:
                    raise WriteConflict(write)
        except Exception:
            if session.in_transaction:
                session.abort_transaction()
            raise
        self._commit(session)

    def _commit(self, session):
        for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
            try:
                session.commit_transaction()
                return
            except PyMongoError as exc:
                # The first commit may have landed; commitTransaction may be re-issued
                if not exc.has_error_label("UnknownTransactionCommitResult") or attempt == TRANSACTION_ATTEMPTS:
                    raise
                logger.warning("Unknown commit result, retrying commit (%d/%d): %s",
                               attempt, TRANSACTION_ATTEMPTS, exc)


def _matches(doc: Document, filter: Optional[Document]) -> bool:
    for field, expected in (filter or {}).items():
        actual = doc.get(field)
        if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
            for op, operand in expected.items():
                if op == "$gte":
                    if actual is None or actual < operand:
                        return False
                else:
                    raise ValueError(f"Unsupported filter operator: {op}")
        elif actual != expected:
            return False
    return True


def _updated(doc: Document, update: Document) -> Document:
    new = dict(doc)
    for op, fields in update.items():
        if op == "$set":
            new.update(copy.deepcopy(fields))
        elif op == "$inc":
            for field, amount in fields.items():
                new[field] = new.get(field, 0) + amount
        else:
            raise ValueError(f"Unsupported update operator: {op}")
    return new


class MemoryStore(RecordStore):
    """In-process store with the same contract as `MongoStore`.

    Reads hand out copies. `apply` stages the batch against copies of the
    touched collections and swaps them in only when every write succeeded.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[ObjectId, Document]] = {name: {} for name in COLLECTIONS}

    def _coll(self, name: str) -> Dict[ObjectId, Document]:
        return self._collections.setdefault(name, {})

    @staticmethod
    def _check_unique(collection: str, docs: Dict[ObjectId, Document], doc: Document) -> None:
        for field in UNIQUE_FIELDS.get(collection, ()):
            if any(other.get(field) == doc.get(field) for key, other in docs.items() if key != doc["_id"]):
                raise DuplicateKey(f"Duplicate {collection}.{field}: {doc.get(field)!r}")

    def find(self, collection, filter=None, sort=None):
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._coll(collection).values() if _matches(d, filter)]
        for field, direction in reversed(list(sort or [])):
            docs.sort(key=lambda d: (d.get(field) is None, d.get(field)), reverse=direction < 0)
        return docs

    def find_one(self, collection, filter):
        with self._lock:
            for doc in self._coll(collection).values():
                if _matches(doc, filter):
                    return copy.deepcopy(doc)
        return None

    def insert(self, collection, document):
        doc = copy.deepcopy(dict(document))
        doc.setdefault("_id", ObjectId())
        with self._lock:
            coll = self._coll(collection)
            self._check_unique(collection, coll, doc)
            coll[doc["_id"]] = doc
        return copy.deepcopy(doc)

    def update(self, collection, filter, update):
        with self._lock:
            coll = self._coll(collection)
            for key, doc in coll.items():
                if _matches(doc, filter):
                    coll[key] = _updated(doc, update)
                    return copy.deepcopy(coll[key])
        return None

    def delete(self, collection, filter):
        with self._lock:
            coll = self._coll(collection)
            for key, doc in list(coll.items()):
                if _matches(doc, filter):
                    return coll.pop(key)
        return None

    def collection_names(self):
        with self._lock:
            return [name for name, docs in self._collections.items() if docs]

    def apply(self, writes):
        with self._lock:
            staged = {}
            for write in writes:
                if write.collection not in staged:
                    staged[write.collection] = dict(self._coll(write.collection))
                coll = staged[write.collection]
                if write.kind == "insert":
                    self._check_unique(write.collection, coll, write.document)
                    coll[write.document["_id"]] = copy.deepcopy(write.document)
                    continue
                matched = [key for key, doc in coll.items() if _matches(doc, write.filter)]
                if len(matched) != 1:
                    raise WriteConflict(write)
                coll[matched[0]] = _updated(coll[matched[0]], write.update)
            self._collections.update(staged)


def open_store(settings) -> RecordStore:
    """MongoDB for a mongodb:// URL; "memory://" keeps everything in process."""
    if settings.database_url.startswith("memory:"):
        logger.info("Using in-memory record store")
        return MemoryStore()
    return MongoStore.from_settings(settings)
