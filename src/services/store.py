"""Document store contract and the thread-safe in-memory backend.

The concierge talks to its persistence layer through :class:`DocumentStore`,
a deliberately small, Firestore-shaped contract:

* documents live at slash-separated paths
  (``tenants/t1/appointments/a1``), the parent path is the collection;
* ``set(..., merge=True)`` deep-merges nested maps;
* ``query`` filters on named fields with ``(field, op, value)`` tuples,
  orders and limits;
* ``run_transaction(fn, scope=...)`` runs ``fn(txn)`` and applies its writes
  atomically.  Transactions sharing a scope (the tenant id) are serialised,
  so a read-then-write inside one transaction can never interleave with
  another for the same tenant.  Different scopes never contend.

Any backend failure surfaces as :class:`StoreUnavailableError`.

Usage
-----
>>> store = InMemoryDocumentStore()
>>> store.set("tenants/t1", {"name": "Fade Studio"})
>>> store.query("tenants", where=[("name", "==", "Fade Studio")])[0].id
't1'
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Filter = tuple[str, str, Any]

_GLOBAL_SCOPE = "__global__"


class StoreError(Exception):
    """Base class for store failures."""


class StoreUnavailableError(StoreError):
    """The backend could not be reached or the transaction could not commit."""


class DocumentNotFoundError(StoreError):
    """``update`` targeted a document that does not exist."""


@dataclass(frozen=True)
class Document:
    """A query hit: the document id, its full path and a copy of its data."""

    id: str
    path: str
    data: dict[str, Any]


# ── Helpers shared by every backend ──────────────────────────────────


def collection_of(path: str) -> str:
    """Return the collection path of a document path."""
    return path.rsplit("/", 1)[0]


def new_document_id() -> str:
    return uuid.uuid4().hex[:20]


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with *updates* merged into *base*, recursing into maps."""
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _compare(actual: Any, op: str, expected: Any) -> bool:
    try:
        if op == "==":
            return actual == expected
        if op == "!=":
            return actual != expected
        if op == "<":
            return actual < expected
        if op == "<=":
            return actual <= expected
        if op == ">":
            return actual > expected
        if op == ">=":
            return actual >= expected
        if op == "in":
            return actual in expected
        if op == "not-in":
            return actual not in expected
    except TypeError:
        return False
    raise ValueError(f"Unsupported query operator: {op!r}")


def matches(data: dict[str, Any], where: Iterable[Filter]) -> bool:
    """True when *data* satisfies every filter.

    Documents missing a filtered field never match (Firestore semantics).
    """
    for field_name, op, expected in where:
        if field_name not in data:
            return False
        if not _compare(data[field_name], op, expected):
            return False
    return True


def apply_query(
    docs: Iterable[Document],
    where: Sequence[Filter] = (),
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
) -> list[Document]:
    """Filter, order and limit an iterable of documents in memory."""
    hits = [doc for doc in docs if matches(doc.data, where)]
    if order_by:
        hits = [doc for doc in hits if order_by in doc.data]
        hits.sort(key=lambda doc: doc.data[order_by], reverse=descending)
    if limit is not None:
        hits = hits[:limit]
    return hits


# ── Contract ─────────────────────────────────────────────────────────


class Transaction(ABC):
    """Reads and buffered writes inside :meth:`DocumentStore.run_transaction`."""

    @abstractmethod
    def get(self, path: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]: ...

    @abstractmethod
    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None: ...

    def update(self, path: str, fields: dict[str, Any]) -> None:
        """Merge *fields* into an existing document."""
        if self.get(path) is None:
            raise DocumentNotFoundError(path)
        self.set(path, fields, merge=True)

    def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""
        doc_id = new_document_id()
        self.set(f"{collection}/{doc_id}", data)
        return doc_id


class DocumentStore(ABC):
    """Narrow contract over a transactional document store."""

    @abstractmethod
    def get(self, path: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None: ...

    @abstractmethod
    def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]: ...

    @abstractmethod
    def run_transaction(
        self, fn: Callable[[Transaction], T], *, scope: str | None = None,
    ) -> T: ...

    def update(self, path: str, fields: dict[str, Any]) -> None:
        if self.get(path) is None:
            raise DocumentNotFoundError(path)
        self.set(path, fields, merge=True)

    def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = new_document_id()
        self.set(f"{collection}/{doc_id}", data)
        return doc_id


# ── Staged transactions ──────────────────────────────────────────────


class StagedTransaction(Transaction):
    """Stages full post-write documents; the backend applies them on commit.

    Reads see the committed state overlaid with this transaction's own writes.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._staged: dict[str, dict[str, Any]] = {}

    @property
    def staged(self) -> dict[str, dict[str, Any]]:
        return self._staged

    def get(self, path: str) -> dict[str, Any] | None:
        if path in self._staged:
            return copy.deepcopy(self._staged[path])
        return self._store.get(path)

    def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        view = {doc.path: doc for doc in self._store.query(collection)}
        for path, data in self._staged.items():
            if collection_of(path) == collection:
                view[path] = Document(
                    id=path.rsplit("/", 1)[1], path=path, data=copy.deepcopy(data),
                )
        return apply_query(view.values(), where, order_by, descending, limit)

    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        if merge:
            self._staged[path] = deep_merge(self.get(path) or {}, data)
        else:
            self._staged[path] = copy.deepcopy(data)


# ── In-memory backend ────────────────────────────────────────────────


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe dict-backed store.

    Suitable for local development, the CLI simulator and tests.  Data is
    lost on process restart.
    """

    def __init__(self) -> None:
        # path → document body
        self._docs: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._scope_locks: dict[str, threading.RLock] = {}
        self._scope_guard = threading.Lock()

    def _scope_lock(self, scope: str) -> threading.RLock:
        with self._scope_guard:
            lock = self._scope_locks.get(scope)
            if lock is None:
                lock = self._scope_locks[scope] = threading.RLock()
            return lock

    def get(self, path: str) -> dict[str, Any] | None:
        with self._lock:
            data = self._docs.get(path)
            return copy.deepcopy(data) if data is not None else None

    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        with self._lock:
            if merge:
                self._docs[path] = deep_merge(self._docs.get(path, {}), data)
            else:
                self._docs[path] = copy.deepcopy(data)

    def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        with self._lock:
            docs = [
                Document(id=path.rsplit("/", 1)[1], path=path, data=copy.deepcopy(data))
                for path, data in self._docs.items()
                if collection_of(path) == collection
            ]
        return apply_query(docs, where, order_by, descending, limit)

    def run_transaction(
        self, fn: Callable[[Transaction], T], *, scope: str | None = None,
    ) -> T:
        with self._scope_lock(scope or _GLOBAL_SCOPE):
            txn = StagedTransaction(self)
            result = fn(txn)
            with self._lock:
                for path, data in txn.staged.items():
                    self._docs[path] = data
            logger.debug(
                "Store: committed %d write(s) in scope %s", len(txn.staged), scope,
            )
            return result
