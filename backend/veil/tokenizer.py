from __future__ import annotations

import logging
import secrets
import string
import uuid

from cryptography.exceptions import InvalidTag

from veil import encryption
from veil.audit import AuditRecorder
from veil.errors import (
    AnonymizationError,
    DecryptionFailedError,
    StoreError,
    TokenizationFailedError,
    TokenNotFoundError,
)
from veil.key_provider import KeyProvider
from veil.models import (
    AuditOperation,
    TokenFormat,
    TokenizationOptions,
    TokenMapping,
    utcnow,
)
from veil.stores import AuditStore, TokenMappingStore

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "tok"

# Format-preserving tokens are short enough to collide; regenerate a few times.
_MAX_TOKEN_ATTEMPTS = 10


class Tokenizer:
    """Replaces values with surrogate tokens backed by a mapping store.

    Each value is deduplicated through an HMAC of the value under the active
    key, so tokenizing the same value twice within one key generation returns
    the same token.  The original value is stored encrypted and can only be
    recovered through :meth:`detokenize`.
    """

    def __init__(
        self,
        mapping_store: TokenMappingStore,
        key_provider: KeyProvider,
        audit_store: AuditStore | None = None,
        default_prefix: str = DEFAULT_PREFIX,
    ) -> None:
        self._store = mapping_store
        self._key_provider = key_provider
        self._audit = AuditRecorder(audit_store)
        self._default_prefix = default_prefix

    async def tokenize(
        self,
        value: str,
        options: TokenizationOptions | None = None,
        *,
        subject_id: str | None = None,
        actor_id: str | None = None,
    ) -> str:
        if not isinstance(value, str):
            raise TokenizationFailedError(
                f"Only strings can be tokenized, got {type(value).__name__}"
            )
        options = options or TokenizationOptions()

        key_id = await self._key_provider.get_active_key_id()
        key = await self._key_provider.get_key(key_id)
        value_hash = encryption.keyed_hash(value, key).hex()

        existing = await self._call(
            "get_by_original_value_hash", self._store.get_by_original_value_hash(value_hash)
        )
        if existing is not None and not existing.is_expired():
            logger.debug(
                "Tokenization completed (existing mapping). TokenFormat=%s", options.format.value
            )
            return existing.token

        token = await self._new_token(value, options)
        try:
            encrypted = encryption.seal(value, key)
        except (ValueError, TypeError) as exc:
            logger.warning("Tokenization failed. ErrorMessage=%s", exc)
            raise TokenizationFailedError(f"Encrypting the original value failed: {exc}") from exc

        now = utcnow()
        mapping = TokenMapping(
            token=token,
            original_value_hash=value_hash,
            encrypted_original_value=encrypted,
            key_id=key_id,
            created_at=now,
            expires_at=now + options.expires_in if options.expires_in else None,
        )
        # The token is only handed out once its mapping is stored.
        stored = await self._call("store", self._store.store(mapping))
        if stored.token != token:
            logger.debug(
                "Tokenization completed (concurrent mapping). TokenFormat=%s", options.format.value
            )
            return stored.token

        await self._audit.record(
            AuditOperation.TOKENIZED,
            subject_id=subject_id,
            technique=options.format.value,
            key_id=key_id,
            actor_id=actor_id,
        )
        logger.debug("Tokenization completed. TokenFormat=%s", options.format.value)
        return token

    async def detokenize(
        self,
        token: str,
        *,
        subject_id: str | None = None,
        actor_id: str | None = None,
    ) -> str:
        mapping = await self._call("get_by_token", self._store.get_by_token(token))
        if mapping is None:
            logger.warning("Token not found. Token=%s", token)
            raise TokenNotFoundError(token)
        if mapping.is_expired():
            logger.warning("Token expired. Token=%s", token)
            raise TokenNotFoundError(token, "has expired")

        key = await self._key_provider.get_key(mapping.key_id)
        try:
            value = encryption.open_sealed(mapping.encrypted_original_value, key)
        except (InvalidTag, ValueError) as exc:
            logger.warning("Detokenization failed. Token=%s, ErrorMessage=decryption failed", token)
            raise DecryptionFailedError(mapping.key_id, "stored value could not be decrypted") from exc

        await self._audit.record(
            AuditOperation.DETOKENIZED,
            subject_id=subject_id,
            key_id=mapping.key_id,
            actor_id=actor_id,
        )
        logger.debug("Detokenization completed. Token=%s", token)
        return value

    async def is_token(self, value: str) -> bool:
        return await self._call("get_by_token", self._store.get_by_token(value)) is not None

    # ------------------------------------------------------------------
    # Token generation
    # ------------------------------------------------------------------

    async def _new_token(self, value: str, options: TokenizationOptions) -> str:
        if options.format == TokenFormat.UUID:
            return str(uuid.uuid4())
        if options.format == TokenFormat.PREFIXED:
            return f"{options.prefix or self._default_prefix}_{uuid.uuid4().hex}"

        for _ in range(_MAX_TOKEN_ATTEMPTS):
            candidate = format_preserving_token(value)
            if candidate == value:
                continue
            if await self._call("get_by_token", self._store.get_by_token(candidate)) is None:
                return candidate
        logger.warning("Tokenization failed. ErrorMessage=no unique format-preserving token")
        raise TokenizationFailedError(
            "Could not generate a unique format-preserving token; "
            "the value has too few replaceable characters"
        )

    @staticmethod
    async def _call(operation: str, awaitable):
        try:
            return await awaitable
        except AnonymizationError:
            raise
        except Exception as exc:
            raise StoreError(operation, str(exc)) from exc


def format_preserving_token(value: str) -> str:
    """Random token with the same length and character classes as *value*.

    Upper-case letters, lower-case letters and digits are replaced by random
    characters of the same class; everything else (separators, spaces) is
    kept in place.
    """
    out = []
    for char in value:
        if char in string.ascii_uppercase:
            out.append(secrets.choice(string.ascii_uppercase))
        elif char in string.ascii_lowercase:
            out.append(secrets.choice(string.ascii_lowercase))
        elif char in string.digits:
            out.append(secrets.choice(string.digits))
        else:
            out.append(char)
    return "".join(out)
