"""Backend-neutral document store interface.

The reward engine talks to this interface only. Documents are addressed by
slash-separated paths (``users/u1``, ``quests/q1/members/u1``) and hold plain
dictionaries. Write values may be one of the field transforms below, which
each backend translates into its native equivalent.
"""
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple


class Increment:
    """Atomic numeric delta applied at commit time."""

    def __init__(self, amount):
        self.amount = amount

    def __repr__(self):
        return f"Increment({self.amount})"


class ArrayUnion:
    """Append values not already present in an array field."""

    def __init__(self, values):
        self.values = list(values)

    def __repr__(self):
        return f"ArrayUnion({self.values})"


class ArrayRemove:
    """Remove every occurrence of the given values from an array field."""

    def __init__(self, values):
        self.values = list(values)

    def __repr__(self):
        return f"ArrayRemove({self.values})"


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()

# (field, operator, value) triples, e.g. ('isUsed', '==', False)
Filter = Tuple[str, str, Any]


class StoreConflict(Exception):
    """Raised by a backend when a commit observed a concurrent write."""
    pass


class DocumentSnapshot:
    def __init__(self, path: str, data: Optional[dict]):
        self.path = path
        self._data = data

    @property
    def id(self) -> str:
        return self.path.rsplit('/', 1)[-1]

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[dict]:
        return dict(self._data) if self._data is not None else None

    def get(self, field: str, default=None):
        if self._data is None:
            return default
        value = self._data
        for part in field.split('.'):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def __repr__(self):
        return f"DocumentSnapshot({self.path!r}, exists={self.exists})"


def collection_of(path: str) -> str:
    return path.rsplit('/', 1)[0]


def new_document_id() -> str:
    return uuid.uuid4().hex[:20]


class Transaction:
    """One attempt of a read-then-write unit of work.

    All reads must happen before the first staged write; writes become
    visible atomically when the surrounding ``run_transaction`` commits.
    """

    def get(self, path: str) -> DocumentSnapshot:
        return self.get_all([path])[0]

    def get_all(self, paths: Sequence[str]) -> List[DocumentSnapshot]:
        raise NotImplementedError

    def query(self, collection: str, filters: Iterable[Filter] = (),
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> List[DocumentSnapshot]:
        raise NotImplementedError

    def set(self, path: str, data: dict, merge: bool = False):
        raise NotImplementedError

    def update(self, path: str, data: dict):
        raise NotImplementedError

    def delete(self, path: str):
        raise NotImplementedError

    def new_path(self, collection: str) -> str:
        return f"{collection}/{new_document_id()}"


class WriteBatch:
    """Blind (non-transactional) batched writes, committed atomically."""

    def set(self, path: str, data: dict, merge: bool = False):
        raise NotImplementedError

    def update(self, path: str, data: dict):
        raise NotImplementedError

    def delete(self, path: str):
        raise NotImplementedError

    def commit(self):
        raise NotImplementedError

    def __len__(self):
        raise NotImplementedError


class DocumentStore:
    """Transactional document store used by every reward procedure."""

    max_attempts = 5

    def run_transaction(self, fn: Callable[[Transaction], Any],
                        max_attempts: Optional[int] = None) -> Any:
        """Run ``fn`` inside a transaction, retrying it on write conflicts.

        Exceptions raised by ``fn`` abort the attempt without committing and
        propagate unchanged. Exhausted retries raise ``TransientConflict``.
        """
        raise NotImplementedError

    def get(self, path: str) -> DocumentSnapshot:
        raise NotImplementedError

    def query(self, collection: str, filters: Iterable[Filter] = (),
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> List[DocumentSnapshot]:
        raise NotImplementedError

    def list_documents(self, collection: str) -> List[DocumentSnapshot]:
        return self.query(collection)

    def batch(self) -> WriteBatch:
        raise NotImplementedError

    def set(self, path: str, data: dict, merge: bool = False):
        batch = self.batch()
        batch.set(path, data, merge=merge)
        batch.commit()

    def update(self, path: str, data: dict):
        batch = self.batch()
        batch.update(path, data)
        batch.commit()

    def delete(self, path: str):
        batch = self.batch()
        batch.delete(path)
        batch.commit()

    def add(self, collection: str, data: dict) -> str:
        path = f"{collection}/{new_document_id()}"
        self.set(path, data)
        return path


def chunked(items: Sequence, size: int) -> List[Sequence]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def match_filter(data: Dict[str, Any], flt: Filter) -> bool:
    """Evaluate one query filter against a document dictionary."""
    field, op, expected = flt
    snapshot = DocumentSnapshot('', data)
    missing = object()
    actual = snapshot.get(field, missing)
    if actual is missing:
        return False
    try:
        if op == '==':
            return actual == expected
        if op == '!=':
            return actual != expected
        if op == '<':
            return actual < expected
        if op == '<=':
            return actual <= expected
        if op == '>':
            return actual > expected
        if op == '>=':
            return actual >= expected
        if op == 'in':
            return actual in expected
        if op == 'array_contains':
            return isinstance(actual, list) and expected in actual
    except TypeError:
        return False
    raise ValueError(f"Unsupported query operator: {op}")
