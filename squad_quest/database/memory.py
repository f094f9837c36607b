"""In-process document store with optimistic concurrency.

Each document carries a version number. A transaction remembers the version
of every document it read and, at commit, re-validates them under the store
lock; any change means another transaction won the race, so the attempt is
discarded and re-run. This mirrors the conflict behaviour of Firestore
transactions closely enough for local development and the test-suite.
"""
import copy
import logging
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random

from squad_quest.database.store import (
    DELETE_FIELD, ArrayRemove, ArrayUnion, DocumentSnapshot, DocumentStore,
    Filter, Increment, StoreConflict, Transaction, WriteBatch, collection_of,
    match_filter,
)
from squad_quest.errors import TransientConflict

logger = logging.getLogger(__name__)


class DocumentMissing(Exception):
    """``update`` targeted a document that does not exist."""
    pass


def _resolve(current, value):
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    if isinstance(value, ArrayUnion):
        result = list(current) if isinstance(current, list) else []
        for item in value.values:
            if item not in result:
                result.append(item)
        return result
    if isinstance(value, ArrayRemove):
        result = list(current) if isinstance(current, list) else []
        return [item for item in result if item not in value.values]
    return copy.deepcopy(value)


def _merge(target: dict, data: dict):
    for key, value in data.items():
        if value is DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict):
            existing = target.get(key)
            if not isinstance(existing, dict):
                existing = {}
            _merge(existing, value)
            target[key] = existing
        else:
            target[key] = _resolve(target.get(key), value)


def _strip_transforms(data: dict) -> dict:
    doc = {}
    _merge(doc, data)
    return doc


def _apply_field_paths(target: dict, data: dict):
    for field_path, value in data.items():
        parts = field_path.split('.')
        node = target
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        leaf = parts[-1]
        if value is DELETE_FIELD:
            node.pop(leaf, None)
        elif isinstance(value, dict):
            node[leaf] = _strip_transforms(value)
        else:
            node[leaf] = _resolve(node.get(leaf), value)


class _Write:
    __slots__ = ('kind', 'path', 'data', 'merge')

    def __init__(self, kind, path, data=None, merge=False):
        self.kind = kind
        self.path = path
        self.data = data
        self.merge = merge


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts
        self._docs: Dict[str, Tuple[int, dict]] = {}
        self._lock = threading.RLock()
        self.commits = 0

    # -- reads -------------------------------------------------------------
    def _read(self, path: str) -> Tuple[int, Optional[dict]]:
        with self._lock:
            version, data = self._docs.get(path, (0, None))
            return version, copy.deepcopy(data)

    def _query(self, collection, filters, order_by, descending, limit):
        with self._lock:
            rows = [
                (path, version, copy.deepcopy(data))
                for path, (version, data) in self._docs.items()
                if data is not None and collection_of(path) == collection
            ]
        for flt in filters:
            rows = [row for row in rows if match_filter(row[2], flt)]
        if order_by:
            rows = [row for row in rows if DocumentSnapshot(row[0], row[2]).get(order_by) is not None]
            rows.sort(key=lambda row: DocumentSnapshot(row[0], row[2]).get(order_by), reverse=descending)
        else:
            rows.sort(key=lambda row: row[0])
        if limit is not None:
            rows = rows[:limit]
        return rows

    def get(self, path: str) -> DocumentSnapshot:
        _, data = self._read(path)
        return DocumentSnapshot(path, data)

    def query(self, collection: str, filters: Iterable[Filter] = (),
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> List[DocumentSnapshot]:
        rows = self._query(collection, list(filters), order_by, descending, limit)
        return [DocumentSnapshot(path, data) for path, _, data in rows]

    # -- writes ------------------------------------------------------------
    def _apply(self, writes: Sequence[_Write], expected: Dict[str, int]):
        with self._lock:
            for path, version in expected.items():
                current = self._docs.get(path, (0, None))[0]
                if current != version:
                    raise StoreConflict(path)
            staged: Dict[str, Tuple[int, Optional[dict]]] = {}
            for write in writes:
                version, data = staged.get(write.path, self._docs.get(write.path, (0, None)))
                if write.kind == 'delete':
                    staged[write.path] = (version, None)
                    continue
                if write.kind == 'update':
                    if data is None:
                        raise DocumentMissing(write.path)
                    doc = copy.deepcopy(data)
                    _apply_field_paths(doc, write.data)
                elif write.merge and data is not None:
                    doc = copy.deepcopy(data)
                    _merge(doc, write.data)
                else:
                    doc = _strip_transforms(write.data)
                staged[write.path] = (version, doc)
            for path, (version, data) in staged.items():
                if data is None:
                    if path in self._docs:
                        self._docs[path] = (version + 1, None)
                else:
                    self._docs[path] = (version + 1, data)
            self.commits += 1

    def batch(self) -> 'InMemoryWriteBatch':
        return InMemoryWriteBatch(self)

    def run_transaction(self, fn, max_attempts=None):
        attempts = max_attempts or self.max_attempts
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            retry=retry_if_exception_type(StoreConflict),
            wait=wait_random(0, 0.01),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    transaction = InMemoryTransaction(self)
                    result = fn(transaction)
                    self._apply(transaction.writes, transaction.read_versions)
                    return result
        except StoreConflict as e:
            logger.warning(f"Transaction gave up after {attempts} attempts (conflict on {e})")
            raise TransientConflict("Too much contention, please retry") from e

    def dump(self) -> Dict[str, dict]:
        """Snapshot of every live document, keyed by path."""
        with self._lock:
            return {path: copy.deepcopy(data) for path, (_, data) in self._docs.items() if data is not None}


class InMemoryTransaction(Transaction):
    def __init__(self, store: InMemoryDocumentStore):
        self._store = store
        self.read_versions: Dict[str, int] = {}
        self.writes: List[_Write] = []

    def _check_read_allowed(self):
        if self.writes:
            raise RuntimeError("Transactions require all reads before any writes")

    def get_all(self, paths):
        self._check_read_allowed()
        snapshots = []
        for path in paths:
            version, data = self._store._read(path)
            self.read_versions.setdefault(path, version)
            snapshots.append(DocumentSnapshot(path, data))
        return snapshots

    def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        self._check_read_allowed()
        rows = self._store._query(collection, list(filters), order_by, descending, limit)
        for path, version, _ in rows:
            self.read_versions.setdefault(path, version)
        return [DocumentSnapshot(path, data) for path, _, data in rows]

    def set(self, path, data, merge=False):
        self.writes.append(_Write('set', path, data, merge))

    def update(self, path, data):
        self.writes.append(_Write('update', path, data))

    def delete(self, path):
        self.writes.append(_Write('delete', path))


class InMemoryWriteBatch(WriteBatch):
    def __init__(self, store: InMemoryDocumentStore):
        self._store = store
        self._writes: List[_Write] = []

    def set(self, path, data, merge=False):
        self._writes.append(_Write('set', path, data, merge))

    def update(self, path, data):
        self._writes.append(_Write('update', path, data))

    def delete(self, path):
        self._writes.append(_Write('delete', path))

    def commit(self):
        self._store._apply(self._writes, {})

    def __len__(self):
        return len(self._writes)
