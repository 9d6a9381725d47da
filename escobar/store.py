"""
Account Store

An in-process transactional document store with the contract the ledger
protocol relies on:

- documents grouped in slash-addressed collections (``members/<id>/logs``)
- optimistic read-modify-write transactions: snapshot reads, buffered
  writes, a version check at commit and a bounded retry loop; an error
  raised from reads that went stale is retried like a conflict
- server-assigned, strictly increasing timestamps
- one-shot queries and live subscriptions that deliver the full result
  set every time it changes
"""

import copy
import itertools
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Optional, TypeVar
from uuid import uuid4

from .errors import TransientStoreError

log = logging.getLogger("escobar.store")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class TransactionConflict(Exception):
    """A document read by the transaction changed before it could commit."""


class TransactionUsageError(RuntimeError):
    pass


class SubscriptionCancelled(Exception):
    pass


@dataclass
class _Document:
    data: dict
    seq: int


@dataclass(frozen=True)
class Query:
    collection: str
    where: tuple[tuple[str, Any], ...] = ()
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None

    def matches(self, doc_id: str, data: dict) -> bool:
        for field_name, expected in self.where:
            actual = doc_id if field_name == "id" else data.get(field_name)
            if actual != expected:
                return False
        if self.order_by and data.get(self.order_by) is None:
            return False
        return True

    def run(self, docs: dict[str, _Document]) -> list[dict]:
        hits = [(doc_id, doc) for doc_id, doc in docs.items() if self.matches(doc_id, doc.data)]
        if self.order_by:
            hits.sort(key=lambda h: (h[1].data[self.order_by], h[1].seq), reverse=self.descending)
        else:
            hits.sort(key=lambda h: h[1].seq)
        if self.limit is not None:
            hits = hits[:self.limit]
        return [{"id": doc_id, **copy.deepcopy(doc.data)} for doc_id, doc in hits]


_CLOSED = object()


class Subscription:
    """Live query handle yielding full result-set snapshots.

    The first snapshot is the result at subscription time; a new one is
    queued after every commit that changes the result. ``cancel()`` detaches
    the subscription from the store and ends iteration.
    """

    def __init__(self, store: "AccountStore", query: Query,
                 transform: Optional[Callable[[dict], Any]] = None):
        self.query = query
        self._store = store
        self._transform = transform
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._last: Optional[list[dict]] = None
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _offer(self, rows: list[dict]) -> None:
        if self.cancelled or rows == self._last:
            return
        self._last = rows
        self._queue.put(rows)

    def _convert(self, rows: list[dict]) -> list:
        if self._transform is None:
            return rows
        return [self._transform(row) for row in rows]

    def get(self, timeout: Optional[float] = None) -> list:
        """Next snapshot. Raises ``queue.Empty`` on timeout and
        ``SubscriptionCancelled`` once cancelled."""
        if self.cancelled:
            raise SubscriptionCancelled(f"subscription on {self.query.collection} was cancelled")
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            raise SubscriptionCancelled(f"subscription on {self.query.collection} was cancelled")
        return self._convert(item)

    def latest(self) -> list:
        """Most recent snapshot without waiting; pending ones are discarded."""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is _CLOSED:
                break
        return self._convert(self._last or [])

    def cancel(self) -> None:
        if self.cancelled:
            return
        self._cancelled.set()
        self._store._unsubscribe(self)
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[list]:
        return self

    def __next__(self) -> list:
        try:
            return self.get()
        except SubscriptionCancelled:
            raise StopIteration

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()


class Transaction:
    """Buffered read-modify-write unit handed to ``run_transaction``.

    All reads must happen before the first write.
    """

    def __init__(self, store: "AccountStore"):
        self._store = store
        self._reads: dict[tuple[str, str], int] = {}
        self._writes: list[tuple[str, str, str, Optional[dict]]] = []

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        if self._writes:
            raise TransactionUsageError("Transactions require all reads to be executed before all writes.")
        data, version = self._store._read(collection, doc_id)
        self._reads[(collection, doc_id)] = version
        return data

    def new_id(self) -> str:
        return uuid4().hex

    def set(self, collection: str, doc_id: str, fields: dict, merge: bool = False) -> None:
        self._writes.append(("merge" if merge else "set", collection, doc_id, dict(fields)))

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        self._writes.append(("update", collection, doc_id, dict(fields)))

    def create(self, collection: str, fields: dict, doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or self.new_id()
        self._writes.append(("create", collection, doc_id, dict(fields)))
        return doc_id

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(("delete", collection, doc_id, None))


class AccountStore:
    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, _Document]] = {}
        self._versions: dict[tuple[str, str], int] = {}
        self._seq = itertools.count()
        self._last_timestamp: Optional[datetime] = None
        self._subscriptions: list[Subscription] = []

    # Reads

    def _read(self, collection: str, doc_id: str) -> tuple[Optional[dict], int]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            version = self._versions.get((collection, doc_id), 0)
            return (copy.deepcopy(doc.data) if doc else None), version

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return self._read(collection, doc_id)[0]

    def query(self, query: Query) -> list[dict]:
        with self._lock:
            return query.run(self._collections.get(query.collection, {}))

    # Single-write helpers, each committed on its own

    def set(self, collection: str, doc_id: str, fields: dict, merge: bool = False) -> None:
        self._commit({}, [("merge" if merge else "set", collection, doc_id, dict(fields))])

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        self._commit({}, [("update", collection, doc_id, dict(fields))])

    def add(self, collection: str, fields: dict) -> str:
        doc_id = uuid4().hex
        self._commit({}, [("create", collection, doc_id, dict(fields))])
        return doc_id

    def delete(self, collection: str, doc_id: str) -> None:
        self._commit({}, [("delete", collection, doc_id, None)])

    # Transactions

    def run_transaction(self, fn: Callable[[Transaction], T], max_attempts: Optional[int] = None) -> T:
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            tx = Transaction(self)
            try:
                result = fn(tx)
            except Exception as e:
                # A refusal computed from reads that have since moved is retried, not reported.
                if self._reads_current(tx._reads):
                    raise
                log.debug("transaction raised on stale reads (attempt %d/%d): %r", attempt, attempts, e)
                continue
            try:
                self._commit(tx._reads, tx._writes)
            except TransactionConflict as e:
                log.debug("transaction conflict (attempt %d/%d): %s", attempt, attempts, e)
                continue
            return result
        log.warning("transaction aborted after %d conflicting attempts", attempts)
        raise TransientStoreError("The store is busy right now. Please try again.")

    def _reads_current(self, reads: dict[tuple[str, str], int]) -> bool:
        with self._lock:
            return all(self._versions.get(key, 0) == version for key, version in reads.items())

    def _next_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _commit(self, reads: dict[tuple[str, str], int], writes: list) -> None:
        with self._lock:
            for (collection, doc_id), version in reads.items():
                if self._versions.get((collection, doc_id), 0) != version:
                    raise TransactionConflict(f"{collection}/{doc_id} changed since it was read")

            for op, collection, doc_id, _ in writes:
                exists = doc_id in self._collections.get(collection, {})
                if op == "create" and exists:
                    raise TransactionConflict(f"{collection}/{doc_id} already exists")
                if op == "update" and not exists:
                    raise LookupError(f"No document to update: {collection}/{doc_id}")

            if not writes:
                return

            timestamp = self._next_timestamp()
            touched = set()
            for op, collection, doc_id, fields in writes:
                self._apply(op, collection, doc_id, fields, timestamp)
                key = (collection, doc_id)
                self._versions[key] = self._versions.get(key, 0) + 1
                touched.add(collection)

            for sub in list(self._subscriptions):
                if sub.query.collection in touched:
                    sub._offer(sub.query.run(self._collections.get(sub.query.collection, {})))

    def _apply(self, op: str, collection: str, doc_id: str, fields: Optional[dict],
               timestamp: datetime) -> None:
        docs = self._collections.setdefault(collection, {})
        if op == "delete":
            docs.pop(doc_id, None)
            return

        resolved = {
            k: (timestamp if v is SERVER_TIMESTAMP else copy.deepcopy(v))
            for k, v in fields.items()
        }
        existing = docs.get(doc_id)
        if op in ("merge", "update") and existing is not None:
            existing.data.update(resolved)
        elif existing is not None:
            existing.data = resolved
        else:
            docs[doc_id] = _Document(data=resolved, seq=next(self._seq))

    # Subscriptions

    def subscribe(self, query: Query, transform: Optional[Callable[[dict], Any]] = None) -> Subscription:
        sub = Subscription(self, query, transform)
        with self._lock:
            self._subscriptions.append(sub)
            sub._offer(query.run(self._collections.get(query.collection, {})))
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
