"""Identity record persistence."""

from collections.abc import Callable
from datetime import datetime

from loguru import logger

from src.bizhub.core.errors import (
    ConcurrentModificationError,
    DuplicateIdentityError,
    SubjectNotFoundError,
)
from src.bizhub.core.models.identity import IdentityRecord, Role
from src.bizhub.core.storage.document_store import DocumentStore

USERS = "users"


class IdentityRepository:
    """Reads and writes identity records keyed by subject id."""

    def __init__(self, store: DocumentStore, max_retries: int = 5):
        self._store = store
        self._max_retries = max_retries

    @property
    def store(self) -> DocumentStore:
        return self._store

    async def get(self, subject_id: str) -> IdentityRecord | None:
        document = await self._store.get(USERS, subject_id)
        return IdentityRecord.model_validate(document) if document else None

    async def require(self, subject_id: str) -> IdentityRecord:
        record = await self.get(subject_id)
        if record is None:
            raise SubjectNotFoundError()
        return record

    async def find_by_email(self, email: str) -> IdentityRecord | None:
        documents = await self._store.query(USERS, {"email": email})
        if not documents:
            return None
        if len(documents) > 1:
            logger.warning("Email {} is shared by {} identity records", email, len(documents))
        return IdentityRecord.model_validate(documents[0])

    async def create(self, record: IdentityRecord) -> IdentityRecord:
        """Insert a new record.

        Raises:
            DuplicateIdentityError: If a record already exists for the subject
        """
        if not await self._store.compare_and_set(
            USERS, record.subject_id, None, record.to_document()
        ):
            raise DuplicateIdentityError()
        return record.model_copy(update={"version": 1})

    async def list_identities(
        self,
        role: Role | None = None,
        is_active: bool | None = None,
        search: str | None = None,
    ) -> list[IdentityRecord]:
        """All records matching the filters, newest first."""
        filters: dict = {}
        if role is not None:
            filters["role"] = role.value
        if is_active is not None:
            filters["subscription.isActive"] = is_active

        records = [
            IdentityRecord.model_validate(doc)
            for doc in await self._store.query(USERS, filters)
        ]
        if search:
            needle = search.lower()
            records = [
                r
                for r in records
                if needle in r.display_name.lower() or needle in r.email.lower()
            ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def delete(self, subject_id: str) -> bool:
        return await self._store.delete(USERS, subject_id)

    async def update_fields(self, subject_id: str, fields: dict) -> bool:
        """Plain merge of document fields, no version check."""
        return await self._store.update(USERS, subject_id, fields)

    async def touch_last_login(self, subject_id: str, at: datetime) -> bool:
        return await self.update_fields(subject_id, {"lastLogin": at.isoformat()})

    async def set_reset_token(
        self, subject_id: str, token_hash: str, expires: datetime
    ) -> bool:
        return await self.update_fields(
            subject_id,
            {
                "resetPasswordTokenHash": token_hash,
                "resetPasswordExpires": expires.isoformat(),
            },
        )

    async def clear_reset_token(self, subject_id: str) -> bool:
        return await self.update_fields(
            subject_id, {"resetPasswordTokenHash": None, "resetPasswordExpires": None}
        )

    async def mutate(
        self,
        subject_id: str,
        transform: Callable[[IdentityRecord], IdentityRecord],
    ) -> IdentityRecord:
        """Compare-and-set loop over one record.

        Raises:
            SubjectNotFoundError: If the record does not exist
            ConcurrentModificationError: If the record kept changing underneath us
        """
        for _ in range(self._max_retries):
            current = await self.require(subject_id)
            updated = transform(current)
            if await self._store.compare_and_set(
                USERS, subject_id, current.version, updated.to_document()
            ):
                return updated.model_copy(update={"version": current.version + 1})
            logger.debug("Identity {} changed concurrently, retrying", subject_id)

        raise ConcurrentModificationError(f"Identity {subject_id} kept changing")

    async def update_profile(
        self,
        subject_id: str,
        *,
        display_name: str | None = None,
        email: str | None = None,
        role: Role | None = None,
    ) -> IdentityRecord:
        """Change name, email or role. Unset arguments are left alone.

        Raises:
            SubjectNotFoundError: If the record does not exist
            DuplicateIdentityError: If ``email`` belongs to another subject
        """
        if email is not None:
            holder = await self.find_by_email(email)
            if holder is not None and holder.subject_id != subject_id:
                raise DuplicateIdentityError("Email already in use")

        changes: dict = {}
        if display_name is not None:
            changes["display_name"] = display_name
        if email is not None:
            changes["email"] = email
        if role is not None:
            changes["role"] = role
        return await self.mutate(subject_id, lambda r: r.model_copy(update=changes))
