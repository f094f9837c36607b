import json
import logging
import os

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1.base_query import FieldFilter

from squad_quest.database.store import (
    DELETE_FIELD, ArrayRemove, ArrayUnion, DocumentSnapshot, DocumentStore,
    Increment, Transaction, WriteBatch,
)
from squad_quest.errors import TransientConflict

logger = logging.getLogger(__name__)

firebase_app = None


def initialize_firebase(firebase_creds):
    """Initialise the default Firebase app from a dict, JSON string or key file path."""
    global firebase_app
    if firebase_admin._apps:
        firebase_app = firebase_admin.get_app()
        return firebase_app

    if isinstance(firebase_creds, str) and firebase_creds.strip().startswith('{'):
        firebase_creds = json.loads(firebase_creds)

    if firebase_creds:
        cred = credentials.Certificate(firebase_creds)
    else:
        # Falls back to GOOGLE_APPLICATION_CREDENTIALS / metadata server
        cred = credentials.ApplicationDefault()

    firebase_app = firebase_admin.initialize_app(cred)
    logger.info(f"Firebase initialized (project: {firebase_app.project_id or os.getenv('GOOGLE_CLOUD_PROJECT', 'default')})")
    return firebase_app


def _to_firestore(value):
    if isinstance(value, Increment):
        return firestore.Increment(value.amount)
    if isinstance(value, ArrayUnion):
        return firestore.ArrayUnion(value.values)
    if isinstance(value, ArrayRemove):
        return firestore.ArrayRemove(value.values)
    if value is DELETE_FIELD:
        return firestore.DELETE_FIELD
    if isinstance(value, dict):
        return {key: _to_firestore(item) for key, item in value.items()}
    return value


def _snapshot(doc) -> DocumentSnapshot:
    return DocumentSnapshot(doc.reference.path, doc.to_dict() if doc.exists else None)


class FirestoreDocumentStore(DocumentStore):
    def __init__(self, client=None, max_attempts: int = 5):
        self.db = client or firestore.client()
        self.max_attempts = max_attempts

    def _build_query(self, collection, filters, order_by, descending, limit):
        query = self.db.collection(collection)
        for field, op, value in filters:
            query = query.where(filter=FieldFilter(field, op, value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit is not None:
            query = query.limit(limit)
        return query

    def get(self, path):
        return _snapshot(self.db.document(path).get())

    def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        query = self._build_query(collection, list(filters), order_by, descending, limit)
        return [_snapshot(doc) for doc in query.stream()]

    def batch(self):
        return FirestoreWriteBatch(self.db)

    def run_transaction(self, fn, max_attempts=None):
        attempts = max_attempts or self.max_attempts
        transaction = self.db.transaction(max_attempts=attempts)

        @firestore.transactional
        def run_in_transaction(transaction):
            return fn(FirestoreTransaction(self, transaction))

        try:
            return run_in_transaction(transaction)
        except google_exceptions.Aborted as e:
            logger.warning(f"Firestore transaction aborted: {e}")
            raise TransientConflict("Too much contention, please retry") from e
        except ValueError as e:
            # Raised by the client once max_attempts commits have failed
            if 'Failed to commit transaction' not in str(e):
                raise
            logger.warning(f"Firestore transaction gave up: {e}")
            raise TransientConflict("Too much contention, please retry") from e


class FirestoreTransaction(Transaction):
    def __init__(self, store: FirestoreDocumentStore, transaction):
        self._store = store
        self._transaction = transaction

    def get_all(self, paths):
        refs = [self._store.db.document(path) for path in paths]
        by_path = {doc.reference.path: doc for doc in self._transaction.get_all(refs)}
        snapshots = []
        for path in paths:
            doc = by_path.get(path)
            snapshots.append(_snapshot(doc) if doc is not None else DocumentSnapshot(path, None))
        return snapshots

    def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        query = self._store._build_query(collection, list(filters), order_by, descending, limit)
        return [_snapshot(doc) for doc in self._transaction.get(query)]

    def set(self, path, data, merge=False):
        self._transaction.set(self._store.db.document(path), _to_firestore(data), merge=merge)

    def update(self, path, data):
        self._transaction.update(self._store.db.document(path), _to_firestore(data))

    def delete(self, path):
        self._transaction.delete(self._store.db.document(path))


class FirestoreWriteBatch(WriteBatch):
    def __init__(self, client):
        self._client = client
        self._batch = client.batch()
        self._count = 0

    def set(self, path, data, merge=False):
        self._batch.set(self._client.document(path), _to_firestore(data), merge=merge)
        self._count += 1

    def update(self, path, data):
        self._batch.update(self._client.document(path), _to_firestore(data))
        self._count += 1

    def delete(self, path):
        self._batch.delete(self._client.document(path))
        self._count += 1

    def commit(self):
        return self._batch.commit()

    def __len__(self):
        return self._count
