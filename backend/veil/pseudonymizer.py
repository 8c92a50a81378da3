from __future__ import annotations

import logging
from typing import Any, Iterable

from cryptography.exceptions import InvalidTag

from veil import encryption, fields
from veil.audit import AuditRecorder
from veil.errors import (
    DecryptionFailedError,
    DepseudonymizationFailedError,
    EncryptionFailedError,
    PseudonymizationFailedError,
)
from veil.key_provider import KeyProvider
from veil.models import AuditOperation, PseudonymizationAlgorithm
from veil.stores import AuditStore

logger = logging.getLogger(__name__)


class Pseudonymizer:
    """Keyed, cryptographic replacement of values.

    Two algorithms are available per call:

    * ``AES_256_GCM`` -- reversible and non-deterministic; a fresh nonce is
      framed together with the ciphertext.
    * ``HMAC_SHA256`` -- one-way and deterministic, so pseudonyms can still be
      searched and joined on.  It has no inverse.

    Pseudonyms are URL-safe base64 strings whose first decoded byte names the
    algorithm that produced them.
    """

    def __init__(self, key_provider: KeyProvider, audit_store: AuditStore | None = None) -> None:
        self._key_provider = key_provider
        self._audit = AuditRecorder(audit_store)

    # ------------------------------------------------------------------
    # Single values
    # ------------------------------------------------------------------

    async def pseudonymize_value(
        self,
        value: str,
        key_id: str,
        algorithm: PseudonymizationAlgorithm = PseudonymizationAlgorithm.AES_256_GCM,
        *,
        subject_id: str | None = None,
        actor_id: str | None = None,
    ) -> str:
        if not isinstance(value, str):
            raise PseudonymizationFailedError(
                f"Only strings can be pseudonymized, got {type(value).__name__}"
            )
        key = await self._key_provider.get_key(key_id)
        pseudonym = self._transform(value, key, key_id, algorithm)

        await self._audit.record(
            AuditOperation.PSEUDONYMIZED,
            subject_id=subject_id,
            technique=algorithm.value,
            key_id=key_id,
            actor_id=actor_id,
        )
        logger.debug("Pseudonymization completed. Algorithm=%s, FieldCount=1", algorithm.value)
        return pseudonym

    async def hmac_pseudonymize(self, value: str, key_id: str, **kwargs: Any) -> str:
        return await self.pseudonymize_value(
            value, key_id, PseudonymizationAlgorithm.HMAC_SHA256, **kwargs
        )

    async def depseudonymize_value(
        self,
        pseudonym: str,
        key_id: str,
        *,
        subject_id: str | None = None,
        actor_id: str | None = None,
    ) -> str:
        frame = encryption.from_text(pseudonym) if isinstance(pseudonym, str) else None
        if frame is None or not frame:
            logger.warning("Depseudonymization failed. ErrorMessage=not a pseudonym")
            raise DepseudonymizationFailedError("Value is not a valid pseudonym")
        if frame[0] == encryption.FRAME_HMAC_SHA256:
            logger.warning("Depseudonymization failed. ErrorMessage=keyed hash is one-way")
            raise DepseudonymizationFailedError(
                "Keyed-hash pseudonyms are one-way and cannot be reversed"
            )
        if not encryption.is_sealed(frame):
            logger.warning("Depseudonymization failed. ErrorMessage=unknown framing")
            raise DepseudonymizationFailedError("Value is not a valid pseudonym")

        key = await self._key_provider.get_key(key_id)
        value = self._open(frame, key, key_id)

        await self._audit.record(
            AuditOperation.DEPSEUDONYMIZED,
            subject_id=subject_id,
            technique=PseudonymizationAlgorithm.AES_256_GCM.value,
            key_id=key_id,
            actor_id=actor_id,
        )
        logger.debug("Depseudonymization completed. KeyId=%s, FieldCount=1", key_id)
        return value

    # ------------------------------------------------------------------
    # Whole objects
    # ------------------------------------------------------------------

    async def pseudonymize(
        self,
        data: Any,
        key_id: str,
        fields_to_transform: Iterable[str] | None = None,
        *,
        subject_id: str | None = None,
        actor_id: str | None = None,
    ) -> Any:
        """Return a copy of *data* with eligible string fields encrypted.

        Eligible fields are declared by the caller; ``None`` means every
        string-valued field.  Non-string and ``None`` values are untouched.
        """
        key = await self._key_provider.get_key(key_id)
        updates: dict[str, str] = {}
        for name in self._eligible(data, fields_to_transform):
            value = fields.get_field(data, name)
            if isinstance(value, str):
                updates[name] = self._transform(
                    value, key, key_id, PseudonymizationAlgorithm.AES_256_GCM
                )

        result = fields.with_updates(data, updates)
        for name in updates:
            await self._audit.record(
                AuditOperation.PSEUDONYMIZED,
                subject_id=subject_id,
                technique=PseudonymizationAlgorithm.AES_256_GCM.value,
                field_name=name,
                key_id=key_id,
                actor_id=actor_id,
            )
        logger.debug(
            "Pseudonymization completed. Algorithm=%s, FieldCount=%d",
            PseudonymizationAlgorithm.AES_256_GCM.value,
            len(updates),
        )
        return result

    async def depseudonymize(
        self,
        data: Any,
        key_id: str,
        fields_to_transform: Iterable[str] | None = None,
        *,
        subject_id: str | None = None,
        actor_id: str | None = None,
    ) -> Any:
        """Inverse of :meth:`pseudonymize`.

        String values that are not encrypted pseudonyms are left as they are;
        a pseudonym that fails authentication raises ``DecryptionFailedError``.
        """
        key = await self._key_provider.get_key(key_id)
        updates: dict[str, str] = {}
        for name in self._eligible(data, fields_to_transform):
            value = fields.get_field(data, name)
            if not isinstance(value, str):
                continue
            frame = encryption.from_text(value)
            if frame is None or not encryption.is_sealed(frame):
                continue
            updates[name] = self._open(frame, key, key_id)

        result = fields.with_updates(data, updates)
        for name in updates:
            await self._audit.record(
                AuditOperation.DEPSEUDONYMIZED,
                subject_id=subject_id,
                technique=PseudonymizationAlgorithm.AES_256_GCM.value,
                field_name=name,
                key_id=key_id,
                actor_id=actor_id,
            )
        logger.debug("Depseudonymization completed. KeyId=%s, FieldCount=%d", key_id, len(updates))
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _eligible(data: Any, requested: Iterable[str] | None) -> list[str]:
        if requested is None:
            return fields.field_names(data)
        return [name for name in requested if fields.has_field(data, name)]

    @staticmethod
    def _transform(
        value: str,
        key: bytes,
        key_id: str,
        algorithm: PseudonymizationAlgorithm,
    ) -> str:
        try:
            if algorithm == PseudonymizationAlgorithm.HMAC_SHA256:
                frame = encryption.hash_frame(value, key)
            else:
                frame = encryption.seal(value, key)
        except (ValueError, TypeError) as exc:
            # Raised by AESGCM for malformed key material.
            logger.warning("Encryption failed. KeyId=%s, ErrorMessage=%s", key_id, exc)
            raise EncryptionFailedError(key_id, str(exc)) from exc
        return encryption.to_text(frame)

    @staticmethod
    def _open(frame: bytes, key: bytes, key_id: str) -> str:
        try:
            return encryption.open_sealed(frame, key)
        except InvalidTag as exc:
            logger.warning("Decryption failed. KeyId=%s, ErrorMessage=authentication failed", key_id)
            raise DecryptionFailedError(key_id, "authentication tag mismatch") from exc
        except ValueError as exc:
            logger.warning("Decryption failed. KeyId=%s, ErrorMessage=%s", key_id, exc)
            raise DecryptionFailedError(key_id, str(exc)) from exc
