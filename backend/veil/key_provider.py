from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import timedelta

from veil.encryption import generate_key
from veil.errors import KeyNotFoundError, KeyRotationFailedError, NoActiveKeyError
from veil.models import DEFAULT_KEY_ALGORITHM, KeyInfo, utcnow

logger = logging.getLogger(__name__)


def new_key_id() -> str:
    return f"key-{uuid.uuid4().hex}"


class KeyProvider(abc.ABC):
    """Owns the lifecycle of the symmetric keys used by the engine.

    Invariant: exactly one active key per algorithm.  Rotation adds a new
    active key and deactivates the old one without deleting it, so data
    pseudonymized or tokenized under the old key stays readable.  Rotation
    never re-encrypts anything; that sweep belongs to the caller.
    """

    @abc.abstractmethod
    async def get_key(self, key_id: str) -> bytes:
        """Return the raw key material for *key_id* (active or not)."""

    @abc.abstractmethod
    async def get_active_key_id(self, algorithm: str = DEFAULT_KEY_ALGORITHM) -> str:
        """Return the id of the active key, or raise ``NoActiveKeyError``."""

    @abc.abstractmethod
    async def rotate_key(self, key_id: str) -> KeyInfo:
        """Replace the active key *key_id* with a freshly generated one."""

    @abc.abstractmethod
    async def list_keys(self) -> list[KeyInfo]:
        """Return the inventory of every known key."""

    @abc.abstractmethod
    async def create_key(
        self,
        algorithm: str = DEFAULT_KEY_ALGORITHM,
        expires_in: timedelta | None = None,
    ) -> KeyInfo:
        """Create the first active key for *algorithm*."""

    @abc.abstractmethod
    async def retire_key(self, key_id: str) -> None:
        """Destroy the material of an inactive key."""


class InMemoryKeyProvider(KeyProvider):
    """Process-local key provider.

    All read-modify-write steps on the active flag run under one
    ``asyncio.Lock`` so concurrent rotations cannot leave two active keys.
    """

    def __init__(self, key_lifetime: timedelta | None = None) -> None:
        self._key_lifetime = key_lifetime
        self._keys: dict[str, tuple[KeyInfo, bytes]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_key(self, key_id: str) -> bytes:
        record = self._keys.get(key_id)
        if record is None:
            logger.warning("Cryptographic key not found. KeyId=%s", key_id)
            raise KeyNotFoundError(key_id)
        return record[1]

    async def get_active_key_id(self, algorithm: str = DEFAULT_KEY_ALGORITHM) -> str:
        for info, _ in self._keys.values():
            if info.is_active and info.algorithm == algorithm:
                return info.key_id
        logger.warning("No active cryptographic key available. Algorithm=%s", algorithm)
        raise NoActiveKeyError(algorithm)

    async def list_keys(self) -> list[KeyInfo]:
        return sorted(
            (info for info, _ in self._keys.values()), key=lambda info: info.created_at
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_key(
        self,
        algorithm: str = DEFAULT_KEY_ALGORITHM,
        expires_in: timedelta | None = None,
    ) -> KeyInfo:
        async with self._lock:
            if self._active_for(algorithm) is not None:
                raise KeyRotationFailedError(
                    algorithm, "an active key already exists; rotate it instead"
                )
            info = self._insert_new_key(algorithm, expires_in)
        logger.info("Key created. KeyId=%s, Algorithm=%s", info.key_id, algorithm)
        return info

    async def rotate_key(self, key_id: str) -> KeyInfo:
        async with self._lock:
            record = self._keys.get(key_id)
            if record is None:
                logger.warning("Key rotation failed. KeyId=%s, Reason=not found", key_id)
                raise KeyNotFoundError(key_id)
            old_info, material = record
            if not old_info.is_active:
                logger.warning("Key rotation failed. KeyId=%s, Reason=not active", key_id)
                raise KeyRotationFailedError(key_id, "key is not the active key")

            self._keys[key_id] = (replace(old_info, is_active=False), material)
            new_info = self._insert_new_key(old_info.algorithm, self._key_lifetime)

        logger.info("Key rotated successfully. KeyId=%s, NewKeyId=%s", key_id, new_info.key_id)
        return new_info

    async def retire_key(self, key_id: str) -> None:
        async with self._lock:
            record = self._keys.get(key_id)
            if record is None:
                raise KeyNotFoundError(key_id)
            if record[0].is_active:
                raise KeyRotationFailedError(key_id, "the active key cannot be retired")
            del self._keys[key_id]
        logger.info("Key retired. KeyId=%s", key_id)

    # ------------------------------------------------------------------
    # Internals (lock must be held)
    # ------------------------------------------------------------------

    def _active_for(self, algorithm: str) -> KeyInfo | None:
        for info, _ in self._keys.values():
            if info.is_active and info.algorithm == algorithm:
                return info
        return None

    def _insert_new_key(self, algorithm: str, expires_in: timedelta | None) -> KeyInfo:
        now = utcnow()
        info = KeyInfo(
            key_id=new_key_id(),
            algorithm=algorithm,
            created_at=now,
            is_active=True,
            expires_at=now + expires_in if expires_in else None,
        )
        self._keys[info.key_id] = (info, generate_key())
        return info
