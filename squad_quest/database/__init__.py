from .store import (
    DELETE_FIELD,
    ArrayRemove,
    ArrayUnion,
    DocumentSnapshot,
    DocumentStore,
    Increment,
    StoreConflict,
    Transaction,
    WriteBatch,
    chunked,
    new_document_id,
)
from .memory import InMemoryDocumentStore
