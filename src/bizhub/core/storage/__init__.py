"""Document store abstractions for identities, lockouts and security logs."""

from .document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    RedisDocumentStore,
    WriteBatch,
    create_document_store,
)

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "RedisDocumentStore",
    "WriteBatch",
    "create_document_store",
]
