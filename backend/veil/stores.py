from __future__ import annotations

import abc

from veil.models import AuditEntry, TokenMapping


class TokenMappingStore(abc.ABC):
    """Persistence contract for token → encrypted original value mappings."""

    @abc.abstractmethod
    async def store(self, mapping: TokenMapping) -> TokenMapping:
        """Persist *mapping* unless a live mapping for its hash already exists.

        An expired mapping with the same hash is replaced.  Returns the
        mapping that is live for the hash afterwards, which is the existing
        one when another writer got there first.
        """

    @abc.abstractmethod
    async def get_by_token(self, token: str) -> TokenMapping | None: ...

    @abc.abstractmethod
    async def get_by_original_value_hash(self, value_hash: str) -> TokenMapping | None:
        """Return the most recent mapping for *value_hash*, or ``None``."""

    @abc.abstractmethod
    async def delete_by_key_id(self, key_id: str) -> int:
        """Delete every mapping encrypted under *key_id*; return the count."""

    @abc.abstractmethod
    async def list_all(self) -> list[TokenMapping]: ...


class AuditStore(abc.ABC):
    """Append-only audit log; entries are never updated or deleted."""

    @abc.abstractmethod
    async def add_entry(self, entry: AuditEntry) -> None: ...

    @abc.abstractmethod
    async def get_by_subject_id(self, subject_id: str) -> list[AuditEntry]: ...

    @abc.abstractmethod
    async def get_all(self) -> list[AuditEntry]: ...


class InMemoryTokenMappingStore(TokenMappingStore):
    def __init__(self) -> None:
        # token -> mapping
        self._by_token: dict[str, TokenMapping] = {}
        # original value hash -> token
        self._by_hash: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._by_token)

    async def store(self, mapping: TokenMapping) -> TokenMapping:
        current = await self.get_by_original_value_hash(mapping.original_value_hash)
        if current is not None:
            if not current.is_expired():
                return current
            del self._by_token[current.token]
        self._by_token[mapping.token] = mapping
        self._by_hash[mapping.original_value_hash] = mapping.token
        return mapping

    async def get_by_token(self, token: str) -> TokenMapping | None:
        return self._by_token.get(token)

    async def get_by_original_value_hash(self, value_hash: str) -> TokenMapping | None:
        token = self._by_hash.get(value_hash)
        if token is None:
            return None
        return self._by_token.get(token)

    async def delete_by_key_id(self, key_id: str) -> int:
        doomed = [m for m in self._by_token.values() if m.key_id == key_id]
        for mapping in doomed:
            del self._by_token[mapping.token]
            if self._by_hash.get(mapping.original_value_hash) == mapping.token:
                del self._by_hash[mapping.original_value_hash]
        return len(doomed)

    async def list_all(self) -> list[TokenMapping]:
        return list(self._by_token.values())


class InMemoryAuditStore(AuditStore):
    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    async def add_entry(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    async def get_by_subject_id(self, subject_id: str) -> list[AuditEntry]:
        return [e for e in self._entries if e.subject_id == subject_id]

    async def get_all(self) -> list[AuditEntry]:
        return list(self._entries)
