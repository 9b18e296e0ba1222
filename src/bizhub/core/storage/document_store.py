"""Document store interface and implementations.

Documents are plain JSON-compatible dicts grouped into collections and
addressed by key. Every write bumps the document's ``version`` field, which
``compare_and_set`` uses for optimistic concurrency control.
"""

from __future__ import annotations

import copy
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from loguru import logger

from src.bizhub.core.errors import StoreError
from src.bizhub.runtime.config.config_data import ConfigData

VERSION_FIELD = "version"


def _lookup(document: dict[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _matches(document: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(_lookup(document, path) == value for path, value in filters.items())


def _apply_update(document: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    """Merge ``fields`` into a copy of ``document``; dotted keys address nested fields."""
    updated = copy.deepcopy(document)
    for path, value in fields.items():
        parts = path.split(".")
        target = updated
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = value
    return updated


def _next_version(current: dict[str, Any] | None) -> int:
    if current is None:
        return 1
    return int(current.get(VERSION_FIELD, 0)) + 1


@dataclass
class BatchOperation:
    kind: Literal["set", "update", "delete"]
    collection: str
    key: str
    value: dict[str, Any] = field(default_factory=dict)


class WriteBatch:
    """Queue of writes applied atomically by :meth:`commit`."""

    def __init__(self, store: DocumentStore):
        self._store = store
        self._operations: list[BatchOperation] = []

    def set(self, collection: str, key: str, value: dict[str, Any]) -> WriteBatch:
        self._operations.append(BatchOperation("set", collection, key, value))
        return self

    def update(self, collection: str, key: str, fields: dict[str, Any]) -> WriteBatch:
        self._operations.append(BatchOperation("update", collection, key, fields))
        return self

    def delete(self, collection: str, key: str) -> WriteBatch:
        self._operations.append(BatchOperation("delete", collection, key))
        return self

    def __len__(self) -> int:
        return len(self._operations)

    async def commit(self) -> None:
        """Apply every queued write or none of them.

        Raises:
            StoreError: If the store is unavailable or an update targets a
                missing document
        """
        if not self._operations:
            return
        await self._store._commit_batch(list(self._operations))
        self._operations.clear()


class DocumentStore(ABC):
    """Abstract interface for document store backends."""

    @abstractmethod
    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        """Fetch one document, or None if absent."""
        pass

    @abstractmethod
    async def set(self, collection: str, key: str, value: dict[str, Any]) -> None:
        """Create or overwrite a document."""
        pass

    @abstractmethod
    async def update(self, collection: str, key: str, fields: dict[str, Any]) -> bool:
        """Merge fields into an existing document.

        Returns:
            False if the document does not exist
        """
        pass

    @abstractmethod
    async def delete(self, collection: str, key: str) -> bool:
        """Remove a document. Returns whether it existed."""
        pass

    @abstractmethod
    async def query(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Return documents whose fields equal every filter value.

        Args:
            collection: Collection name
            filters: Mapping of (possibly dotted) field paths to expected values
        """
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        collection: str,
        key: str,
        expected_version: int | None,
        value: dict[str, Any],
    ) -> bool:
        """Write ``value`` only if the stored version still equals ``expected_version``.

        ``expected_version=None`` means the document must not exist yet.

        Returns:
            True if the write was applied
        """
        pass

    @abstractmethod
    async def _commit_batch(self, operations: list[BatchOperation]) -> None:
        pass

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass

    async def aclose(self) -> None:
        return None


class InMemoryDocumentStore(DocumentStore):
    """Process-local store used in development and tests.

    No operation awaits while it holds intermediate state, so every method is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self):
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._data.setdefault(name, {})

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        document = self._collection(collection).get(key)
        return copy.deepcopy(document) if document is not None else None

    async def set(self, collection: str, key: str, value: dict[str, Any]) -> None:
        docs = self._collection(collection)
        stored = copy.deepcopy(value)
        stored[VERSION_FIELD] = _next_version(docs.get(key))
        docs[key] = stored

    async def update(self, collection: str, key: str, fields: dict[str, Any]) -> bool:
        docs = self._collection(collection)
        current = docs.get(key)
        if current is None:
            return False
        updated = _apply_update(current, fields)
        updated[VERSION_FIELD] = _next_version(current)
        docs[key] = updated
        return True

    async def delete(self, collection: str, key: str) -> bool:
        return self._collection(collection).pop(key, None) is not None

    async def query(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        filters = filters or {}
        return [
            copy.deepcopy(doc)
            for doc in self._collection(collection).values()
            if _matches(doc, filters)
        ]

    async def compare_and_set(
        self,
        collection: str,
        key: str,
        expected_version: int | None,
        value: dict[str, Any],
    ) -> bool:
        docs = self._collection(collection)
        current = docs.get(key)
        if expected_version is None:
            if current is not None:
                return False
        elif current is None or int(current.get(VERSION_FIELD, 0)) != expected_version:
            return False

        stored = copy.deepcopy(value)
        stored[VERSION_FIELD] = _next_version(current)
        docs[key] = stored
        return True

    async def _commit_batch(self, operations: list[BatchOperation]) -> None:
        # Stage against a snapshot so a failing operation leaves nothing applied.
        staged: dict[tuple[str, str], dict[str, Any] | None] = {}

        def current(op: BatchOperation) -> dict[str, Any] | None:
            if (op.collection, op.key) in staged:
                return staged[(op.collection, op.key)]
            return self._collection(op.collection).get(op.key)

        for op in operations:
            existing = current(op)
            if op.kind == "delete":
                staged[(op.collection, op.key)] = None
            elif op.kind == "set":
                stored = copy.deepcopy(op.value)
                stored[VERSION_FIELD] = _next_version(existing)
                staged[(op.collection, op.key)] = stored
            else:
                if existing is None:
                    raise StoreError(
                        f"Batch update failed: {op.collection}/{op.key} does not exist"
                    )
                updated = _apply_update(existing, op.value)
                updated[VERSION_FIELD] = _next_version(existing)
                staged[(op.collection, op.key)] = updated

        for (collection, key), document in staged.items():
            if document is None:
                self._collection(collection).pop(key, None)
            else:
                self._collection(collection)[key] = document

    def is_available(self) -> bool:
        """In-memory storage is always available."""
        return True

    async def ping(self) -> bool:
        return True


class RedisDocumentStore(DocumentStore):
    """Redis-backed store keeping each document as a JSON string.

    Keys are laid out as ``<prefix>:<collection>:<key>``. Compare-and-set and
    batches run inside WATCH/MULTI transactions.
    """

    def __init__(self, redis_client, key_prefix: str = "bizhub", max_retries: int = 5):
        self._redis = redis_client
        self._prefix = key_prefix
        self._max_retries = max_retries
        self._available = True

    def _key(self, collection: str, key: str) -> str:
        return f"{self._prefix}:{collection}:{key}"

    @staticmethod
    def _decode(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._redis.get(self._key(collection, key))
            self._available = True
            return self._decode(raw)
        except Exception as e:
            self._available = False
            raise StoreError(f"Redis get failed: {e}") from e

    async def _read_modify_write(self, redis_key: str, transform) -> bool:
        """Run ``transform(current) -> new | None`` under WATCH, retrying on conflict.

        Returns False when ``transform`` declines the write by returning None.
        """
        from redis.exceptions import WatchError

        for _ in range(self._max_retries):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(redis_key)
                    current = self._decode(await pipe.get(redis_key))
                    updated = transform(current)
                    if updated is None:
                        await pipe.unwatch()
                        return False
                    updated[VERSION_FIELD] = _next_version(current)
                    pipe.multi()
                    pipe.set(redis_key, json.dumps(updated))
                    await pipe.execute()
                    return True
                except WatchError:
                    continue
        raise StoreError(f"Redis write to {redis_key} kept conflicting")

    async def set(self, collection: str, key: str, value: dict[str, Any]) -> None:
        try:
            await self._read_modify_write(
                self._key(collection, key), lambda _current: copy.deepcopy(value)
            )
            self._available = True
        except StoreError:
            raise
        except Exception as e:
            self._available = False
            raise StoreError(f"Redis set failed: {e}") from e

    async def update(self, collection: str, key: str, fields: dict[str, Any]) -> bool:
        try:
            applied = await self._read_modify_write(
                self._key(collection, key),
                lambda current: None if current is None else _apply_update(current, fields),
            )
            self._available = True
            return applied
        except StoreError:
            raise
        except Exception as e:
            self._available = False
            raise StoreError(f"Redis update failed: {e}") from e

    async def delete(self, collection: str, key: str) -> bool:
        try:
            removed = await self._redis.delete(self._key(collection, key))
            self._available = True
            return bool(removed)
        except Exception as e:
            self._available = False
            raise StoreError(f"Redis delete failed: {e}") from e

    async def query(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        filters = filters or {}
        try:
            keys = []
            cursor = 0
            while True:
                cursor, batch = await self._redis.scan(
                    cursor, match=self._key(collection, "*"), count=100
                )
                keys.extend(batch)
                if cursor == 0:
                    break

            documents = []
            if keys:
                for raw in await self._redis.mget(keys):
                    document = self._decode(raw)
                    if document is not None and _matches(document, filters):
                        documents.append(document)
            self._available = True
            return documents
        except Exception as e:
            self._available = False
            raise StoreError(f"Redis query failed: {e}") from e

    async def compare_and_set(
        self,
        collection: str,
        key: str,
        expected_version: int | None,
        value: dict[str, Any],
    ) -> bool:
        def transform(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if expected_version is None:
                return copy.deepcopy(value) if current is None else None
            if current is None or int(current.get(VERSION_FIELD, 0)) != expected_version:
                return None
            return copy.deepcopy(value)

        try:
            applied = await self._read_modify_write(self._key(collection, key), transform)
            self._available = True
            return applied
        except StoreError:
            # A conflict that outlasts the retries means the version moved on.
            return False
        except Exception as e:
            self._available = False
            raise StoreError(f"Redis compare-and-set failed: {e}") from e

    async def _commit_batch(self, operations: list[BatchOperation]) -> None:
        from redis.exceptions import WatchError

        redis_keys = [self._key(op.collection, op.key) for op in operations]
        try:
            for _ in range(self._max_retries):
                async with self._redis.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(*redis_keys)
                        staged: dict[str, dict[str, Any] | None] = {}
                        for op, redis_key in zip(operations, redis_keys):
                            if redis_key in staged:
                                existing = staged[redis_key]
                            else:
                                existing = self._decode(await pipe.get(redis_key))

                            if op.kind == "delete":
                                staged[redis_key] = None
                            elif op.kind == "set":
                                stored = copy.deepcopy(op.value)
                                stored[VERSION_FIELD] = _next_version(existing)
                                staged[redis_key] = stored
                            else:
                                if existing is None:
                                    await pipe.unwatch()
                                    raise StoreError(
                                        f"Batch update failed: {op.collection}/{op.key} "
                                        "does not exist"
                                    )
                                updated = _apply_update(existing, op.value)
                                updated[VERSION_FIELD] = _next_version(existing)
                                staged[redis_key] = updated

                        pipe.multi()
                        for redis_key, document in staged.items():
                            if document is None:
                                pipe.delete(redis_key)
                            else:
                                pipe.set(redis_key, json.dumps(document))
                        await pipe.execute()
                        self._available = True
                        return
                    except WatchError:
                        continue
            raise StoreError("Redis batch kept conflicting")
        except StoreError:
            raise
        except Exception as e:
            self._available = False
            raise StoreError(f"Redis batch failed: {e}") from e

    def is_available(self) -> bool:
        """Check if Redis connection is healthy."""
        return self._available

    async def ping(self) -> bool:
        """Test Redis connection health."""
        try:
            await self._redis.ping()
            self._available = True
            return True
        except Exception:
            self._available = False
            return False

    async def aclose(self) -> None:
        await self._redis.aclose()


async def create_document_store(config: ConfigData) -> DocumentStore:
    """Build the configured store, falling back to memory outside production.

    Raises:
        StoreError: If Redis is selected in production and cannot be reached
    """
    if config.store.backend == "memory":
        logger.info("Document store: in-memory")
        return InMemoryDocumentStore()

    import redis.asyncio as redis

    reason = "Redis not configured"
    if config.redis.enabled and config.redis.url:
        client = redis.from_url(
            config.redis.connection_string,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=config.redis.socket_timeout,
            socket_timeout=config.redis.socket_timeout,
        )
        store = RedisDocumentStore(
            client,
            key_prefix=config.redis.key_prefix,
            max_retries=config.store.cas_retries,
        )
        if await store.ping():
            logger.info("Document store: Redis connected")
            return store
        await store.aclose()
        reason = "Redis ping failed"

    if config.app.environment == "production":
        raise StoreError(f"Document store unavailable: {reason}")

    logger.warning("{}; using in-memory document store", reason)
    return InMemoryDocumentStore()
