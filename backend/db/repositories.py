import logging
from datetime import datetime

from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import AuditEntryRecord, KeyRecord, TokenMappingRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Key CRUD
# ---------------------------------------------------------------------------

async def create_key_record(
    db: AsyncSession,
    key_id: str,
    algorithm: str,
    wrapped_key: bytes,
    salt: bytes,
    created_at: datetime,
    expires_at: datetime | None = None,
) -> KeyRecord:
    """Insert a new active key."""
    record = KeyRecord(
        key_id=key_id,
        algorithm=algorithm,
        wrapped_key=wrapped_key,
        salt=salt,
        is_active=True,
        created_at=created_at,
        expires_at=expires_at,
    )
    db.add(record)
    await db.flush()
    return record


async def get_key_record(db: AsyncSession, key_id: str) -> KeyRecord | None:
    result = await db.execute(select(KeyRecord).where(KeyRecord.key_id == key_id))
    return result.scalar_one_or_none()


async def get_active_key_record(db: AsyncSession, algorithm: str) -> KeyRecord | None:
    result = await db.execute(
        select(KeyRecord).where(
            KeyRecord.algorithm == algorithm,
            KeyRecord.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def list_key_records(db: AsyncSession) -> list[KeyRecord]:
    result = await db.execute(select(KeyRecord).order_by(KeyRecord.created_at.asc()))
    return list(result.scalars().all())


async def deactivate_key(db: AsyncSession, key_id: str) -> int:
    """Flip *key_id* to inactive only if it is still active.

    Returns the number of rows changed; 0 means another writer got there
    first.
    """
    result = await db.execute(
        update(KeyRecord)
        .where(KeyRecord.key_id == key_id, KeyRecord.is_active.is_(True))
        .values(is_active=False)
    )
    return result.rowcount


async def delete_key_record(db: AsyncSession, key_id: str) -> int:
    result = await db.execute(
        delete(KeyRecord).where(KeyRecord.key_id == key_id, KeyRecord.is_active.is_(False))
    )
    return result.rowcount


# ---------------------------------------------------------------------------
# Token mapping CRUD
# ---------------------------------------------------------------------------

async def create_token_mapping(db: AsyncSession, record: TokenMappingRecord) -> TokenMappingRecord:
    db.add(record)
    await db.flush()
    return record


async def get_token_mapping_by_token(
    db: AsyncSession, token: str
) -> TokenMappingRecord | None:
    result = await db.execute(
        select(TokenMappingRecord).where(TokenMappingRecord.token == token)
    )
    return result.scalar_one_or_none()


async def get_token_mapping_by_hash(
    db: AsyncSession, original_value_hash: str
) -> TokenMappingRecord | None:
    result = await db.execute(
        select(TokenMappingRecord).where(
            TokenMappingRecord.original_value_hash == original_value_hash
        )
    )
    return result.scalar_one_or_none()


async def delete_expired_token_mapping(
    db: AsyncSession, original_value_hash: str, now: datetime
) -> int:
    result = await db.execute(
        delete(TokenMappingRecord).where(
            TokenMappingRecord.original_value_hash == original_value_hash,
            TokenMappingRecord.expires_at.is_not(None),
            TokenMappingRecord.expires_at <= now,
        )
    )
    return result.rowcount


async def delete_token_mappings_by_key_id(db: AsyncSession, key_id: str) -> int:
    result = await db.execute(
        delete(TokenMappingRecord).where(TokenMappingRecord.key_id == key_id)
    )
    logger.info("Deleted %d token mappings for key %s", result.rowcount, key_id)
    return result.rowcount


async def list_token_mappings(db: AsyncSession) -> list[TokenMappingRecord]:
    result = await db.execute(
        select(TokenMappingRecord).order_by(TokenMappingRecord.created_at.asc())
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Audit log (insert and read only)
# ---------------------------------------------------------------------------

async def create_audit_entry(db: AsyncSession, record: AuditEntryRecord) -> AuditEntryRecord:
    db.add(record)
    await db.flush()
    return record


async def get_audit_entries_by_subject(
    db: AsyncSession, subject_id: str
) -> list[AuditEntryRecord]:
    result = await db.execute(
        select(AuditEntryRecord)
        .where(AuditEntryRecord.subject_id == subject_id)
        .order_by(AuditEntryRecord.timestamp.asc())
    )
    return list(result.scalars().all())


async def get_audit_entries(db: AsyncSession) -> list[AuditEntryRecord]:
    result = await db.execute(
        select(AuditEntryRecord).order_by(AuditEntryRecord.timestamp.asc())
    )
    return list(result.scalars().all())
