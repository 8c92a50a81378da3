import uuid

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    LargeBinary,
    Index,
    Uuid,
    text,
)
from sqlalchemy.sql import func

from db.database import Base


class KeyRecord(Base):
    __tablename__ = "veil_keys"

    key_id = Column(String(64), primary_key=True)
    algorithm = Column(String(32), nullable=False)
    # Key material wrapped with AES-256-GCM under a master-derived key.
    wrapped_key = Column(LargeBinary, nullable=False)
    salt = Column(LargeBinary, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # At most one active key per algorithm, enforced by the database too.
        Index(
            "uq_veil_keys_one_active",
            "algorithm",
            unique=True,
            sqlite_where=text("is_active"),
            postgresql_where=text("is_active"),
        ),
    )


class TokenMappingRecord(Base):
    __tablename__ = "veil_token_mappings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    token = Column(String(255), nullable=False, unique=True)
    original_value_hash = Column(String(64), nullable=False)
    encrypted_original_value = Column(LargeBinary, nullable=False)
    key_id = Column(String(64), nullable=False)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # One mapping per value hash; the hash is keyed, so per key generation.
        Index("uq_token_mappings_hash", "original_value_hash", unique=True),
        Index("idx_token_mappings_key", "key_id"),
    )


class AuditEntryRecord(Base):
    __tablename__ = "veil_audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    operation = Column(String(32), nullable=False)
    subject_id = Column(String(255), nullable=True)
    technique = Column(String(64), nullable=True)
    field_name = Column(String(255), nullable=True)
    key_id = Column(String(64), nullable=True)
    actor_id = Column(String(255), nullable=True)
    timestamp = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_audit_subject_timestamp", "subject_id", "timestamp"),
    )
