"""SQLAlchemy-backed implementations of the key provider and the stores.

Every public method runs in its own session and transaction; the session
commits on success and rolls back on any exception.  Database errors reach
callers as ``StoreError``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

from cryptography.exceptions import InvalidTag
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db import repositories as repo
from db.models import AuditEntryRecord, KeyRecord, TokenMappingRecord
from veil.encryption import derive_key, generate_key, is_sealed, open_sealed, seal
from veil.errors import (
    AnonymizationError,
    DecryptionFailedError,
    InvalidParameterError,
    KeyNotFoundError,
    KeyRotationFailedError,
    NoActiveKeyError,
    StoreError,
)
from veil.key_provider import KeyProvider, new_key_id
from veil.models import (
    DEFAULT_KEY_ALGORITHM,
    AuditEntry,
    AuditOperation,
    KeyInfo,
    TokenMapping,
    utcnow,
)
from veil.stores import AuditStore, TokenMappingStore

logger = logging.getLogger(__name__)

SALT_SIZE = 16
MIN_MASTER_KEY_LENGTH = 32


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
    operation: str,
) -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on success and rolls back on error."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except AnonymizationError:
            await session.rollback()
            raise
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("Store operation failed. Operation=%s, Error=%s", operation, exc)
            raise StoreError(operation, str(exc)) from exc
        except Exception:
            await session.rollback()
            raise


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Token mappings
# ---------------------------------------------------------------------------


def _mapping_from_record(record: TokenMappingRecord) -> TokenMapping:
    return TokenMapping(
        token=record.token,
        original_value_hash=record.original_value_hash,
        encrypted_original_value=bytes(record.encrypted_original_value),
        key_id=record.key_id,
        id=record.id,
        created_at=_aware(record.created_at),
        expires_at=_aware(record.expires_at),
    )


class SqlTokenMappingStore(TokenMappingStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def store(self, mapping: TokenMapping) -> TokenMapping:
        async with transaction(self._session_factory, "store_token_mapping") as db:
            await repo.delete_expired_token_mapping(db, mapping.original_value_hash, utcnow())
            try:
                await repo.create_token_mapping(
                    db,
                    TokenMappingRecord(
                        id=mapping.id,
                        token=mapping.token,
                        original_value_hash=mapping.original_value_hash,
                        encrypted_original_value=mapping.encrypted_original_value,
                        key_id=mapping.key_id,
                        created_at=mapping.created_at,
                        expires_at=mapping.expires_at,
                    ),
                )
            except IntegrityError:
                await db.rollback()
                record = await repo.get_token_mapping_by_hash(db, mapping.original_value_hash)
                if record is None:
                    # Token collision rather than a concurrent mapping.
                    raise
                logger.debug(
                    "Token mapping already stored by another writer. KeyId=%s", mapping.key_id
                )
                return _mapping_from_record(record)
        return mapping

    async def get_by_token(self, token: str) -> TokenMapping | None:
        async with transaction(self._session_factory, "get_token_mapping") as db:
            record = await repo.get_token_mapping_by_token(db, token)
            return _mapping_from_record(record) if record else None

    async def get_by_original_value_hash(self, value_hash: str) -> TokenMapping | None:
        async with transaction(self._session_factory, "get_token_mapping_by_hash") as db:
            record = await repo.get_token_mapping_by_hash(db, value_hash)
            return _mapping_from_record(record) if record else None

    async def delete_by_key_id(self, key_id: str) -> int:
        async with transaction(self._session_factory, "delete_token_mappings") as db:
            return await repo.delete_token_mappings_by_key_id(db, key_id)

    async def list_all(self) -> list[TokenMapping]:
        async with transaction(self._session_factory, "list_token_mappings") as db:
            return [_mapping_from_record(r) for r in await repo.list_token_mappings(db)]


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def _entry_from_record(record: AuditEntryRecord) -> AuditEntry:
    return AuditEntry(
        operation=AuditOperation(record.operation),
        subject_id=record.subject_id,
        technique=record.technique,
        field_name=record.field_name,
        key_id=record.key_id,
        actor_id=record.actor_id,
        id=record.id,
        timestamp=_aware(record.timestamp),
    )


class SqlAuditStore(AuditStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add_entry(self, entry: AuditEntry) -> None:
        async with transaction(self._session_factory, "add_audit_entry") as db:
            await repo.create_audit_entry(
                db,
                AuditEntryRecord(
                    id=entry.id,
                    operation=entry.operation.value,
                    subject_id=entry.subject_id,
                    technique=entry.technique,
                    field_name=entry.field_name,
                    key_id=entry.key_id,
                    actor_id=entry.actor_id,
                    timestamp=entry.timestamp,
                ),
            )

    async def get_by_subject_id(self, subject_id: str) -> list[AuditEntry]:
        async with transaction(self._session_factory, "get_audit_entries") as db:
            records = await repo.get_audit_entries_by_subject(db, subject_id)
            return [_entry_from_record(r) for r in records]

    async def get_all(self) -> list[AuditEntry]:
        async with transaction(self._session_factory, "get_audit_entries") as db:
            return [_entry_from_record(r) for r in await repo.get_audit_entries(db)]


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def _info_from_record(record: KeyRecord) -> KeyInfo:
    return KeyInfo(
        key_id=record.key_id,
        algorithm=record.algorithm,
        created_at=_aware(record.created_at),
        is_active=record.is_active,
        expires_at=_aware(record.expires_at),
    )


class SqlKeyProvider(KeyProvider):
    """Key provider that persists key material wrapped under a master key.

    Each key row carries its own random salt; the wrapping key is
    ``PBKDF2(master_key, salt)`` and the material is stored as an AES-256-GCM
    frame.  The master key itself never reaches the database.

    Rotation deactivates the old key with a conditional UPDATE and inserts
    the new key in the same transaction.  A partial unique index on
    ``algorithm WHERE is_active`` backs the one-active-key invariant across
    processes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        master_key: str,
        iterations: int = 600_000,
        key_lifetime: timedelta | None = None,
    ) -> None:
        if not master_key:
            raise InvalidParameterError("master_key", "a master key is required")
        if len(master_key) < MIN_MASTER_KEY_LENGTH:
            logger.warning(
                "VEIL_MASTER_KEY looks too short (%d chars). "
                "Use at least %d random characters.",
                len(master_key),
                MIN_MASTER_KEY_LENGTH,
            )
        self._session_factory = session_factory
        self._master_key = master_key
        self._iterations = iterations
        self._key_lifetime = key_lifetime
        # salt -> derived wrapping key
        self._wrapping_keys: dict[bytes, bytes] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Wrapping
    # ------------------------------------------------------------------

    def _wrapping_key(self, salt: bytes) -> bytes:
        key = self._wrapping_keys.get(salt)
        if key is None:
            key = derive_key(self._master_key, salt, self._iterations)
            self._wrapping_keys[salt] = key
        return key

    def _wrap(self, material: bytes, salt: bytes) -> bytes:
        return seal(material.hex(), self._wrapping_key(salt))

    def _unwrap(self, record: KeyRecord) -> bytes:
        frame = bytes(record.wrapped_key)
        if not is_sealed(frame):
            raise DecryptionFailedError(record.key_id, "stored key material is malformed")
        try:
            return bytes.fromhex(open_sealed(frame, self._wrapping_key(bytes(record.salt))))
        except (InvalidTag, ValueError) as exc:
            logger.error("Failed to unwrap key material. KeyId=%s", record.key_id)
            raise DecryptionFailedError(
                record.key_id, "master key does not match the stored key"
            ) from exc

    async def _insert_new_key(
        self, db: AsyncSession, algorithm: str, expires_in: timedelta | None
    ) -> KeyRecord:
        now = utcnow()
        salt = os.urandom(SALT_SIZE)
        return await repo.create_key_record(
            db,
            key_id=new_key_id(),
            algorithm=algorithm,
            wrapped_key=self._wrap(generate_key(), salt),
            salt=salt,
            created_at=now,
            expires_at=now + expires_in if expires_in else None,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_key(self, key_id: str) -> bytes:
        async with transaction(self._session_factory, "get_key") as db:
            record = await repo.get_key_record(db, key_id)
        if record is None:
            logger.warning("Cryptographic key not found. KeyId=%s", key_id)
            raise KeyNotFoundError(key_id)
        return self._unwrap(record)

    async def get_active_key_id(self, algorithm: str = DEFAULT_KEY_ALGORITHM) -> str:
        async with transaction(self._session_factory, "get_active_key") as db:
            record = await repo.get_active_key_record(db, algorithm)
        if record is None:
            logger.warning("No active cryptographic key available. Algorithm=%s", algorithm)
            raise NoActiveKeyError(algorithm)
        return record.key_id

    async def list_keys(self) -> list[KeyInfo]:
        async with transaction(self._session_factory, "list_keys") as db:
            return [_info_from_record(r) for r in await repo.list_key_records(db)]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_key(
        self,
        algorithm: str = DEFAULT_KEY_ALGORITHM,
        expires_in: timedelta | None = None,
    ) -> KeyInfo:
        async with self._lock:
            async with transaction(self._session_factory, "create_key") as db:
                if await repo.get_active_key_record(db, algorithm) is not None:
                    raise KeyRotationFailedError(
                        algorithm, "an active key already exists; rotate it instead"
                    )
                try:
                    record = await self._insert_new_key(db, algorithm, expires_in)
                except IntegrityError as exc:
                    raise KeyRotationFailedError(
                        algorithm, "another active key was created concurrently"
                    ) from exc
                info = _info_from_record(record)
        logger.info("Key created. KeyId=%s, Algorithm=%s", info.key_id, algorithm)
        return info

    async def rotate_key(self, key_id: str) -> KeyInfo:
        async with self._lock:
            async with transaction(self._session_factory, "rotate_key") as db:
                record = await repo.get_key_record(db, key_id)
                if record is None:
                    logger.warning("Key rotation failed. KeyId=%s, Reason=not found", key_id)
                    raise KeyNotFoundError(key_id)
                algorithm = record.algorithm

                if await repo.deactivate_key(db, key_id) != 1:
                    logger.warning("Key rotation failed. KeyId=%s, Reason=not active", key_id)
                    raise KeyRotationFailedError(key_id, "key is not the active key")
                try:
                    new_record = await self._insert_new_key(db, algorithm, self._key_lifetime)
                except IntegrityError as exc:
                    raise KeyRotationFailedError(
                        key_id, "another active key was created concurrently"
                    ) from exc
                info = _info_from_record(new_record)

        logger.info("Key rotated successfully. KeyId=%s, NewKeyId=%s", key_id, info.key_id)
        return info

    async def retire_key(self, key_id: str) -> None:
        async with self._lock:
            async with transaction(self._session_factory, "retire_key") as db:
                record = await repo.get_key_record(db, key_id)
                if record is None:
                    raise KeyNotFoundError(key_id)
                if record.is_active:
                    raise KeyRotationFailedError(key_id, "the active key cannot be retired")
                await repo.delete_key_record(db, key_id)
                self._wrapping_keys.pop(bytes(record.salt), None)
        logger.info("Key retired. KeyId=%s", key_id)
