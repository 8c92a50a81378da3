from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from db.database import get_session_factory
from db.stores import SqlAuditStore, SqlKeyProvider, SqlTokenMappingStore
from veil.anonymizer import Anonymizer
from veil.audit import AuditRecorder
from veil.errors import NoActiveKeyError
from veil.key_provider import InMemoryKeyProvider, KeyProvider
from veil.models import AuditOperation, KeyInfo, RiskThresholds
from veil.pseudonymizer import Pseudonymizer
from veil.risk import RiskAssessor
from veil.stores import (
    AuditStore,
    InMemoryAuditStore,
    InMemoryTokenMappingStore,
    TokenMappingStore,
)
from veil.techniques.registry import TechniqueRegistry, build_default_registry
from veil.tokenizer import Tokenizer

logger = logging.getLogger(__name__)


class PrivacyEngine:
    """Top-level object that wires every Veil component together.

    Typical flow
    ------------
    1. ``initialize`` makes sure an active key exists.
    2. ``anonymizer`` / ``pseudonymizer`` / ``tokenizer`` transform values.
    3. ``risk_assessor`` checks the transformed dataset before release.
    4. ``rotate_key`` replaces the active key and records the rotation.
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        token_store: TokenMappingStore,
        audit_store: AuditStore | None = None,
        registry: TechniqueRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.key_provider = key_provider
        self.token_store = token_store
        self.audit_store = audit_store
        self.registry = registry or build_default_registry(
            mask_char=self.settings.default_mask_char,
            noise_range=self.settings.default_noise_range,
        )

        self.anonymizer = Anonymizer(
            self.registry, audit_store, mask_char=self.settings.default_mask_char
        )
        self.pseudonymizer = Pseudonymizer(key_provider, audit_store)
        self.tokenizer = Tokenizer(
            token_store,
            key_provider,
            audit_store,
            default_prefix=self.settings.default_token_prefix,
        )
        self.risk_assessor = RiskAssessor(
            RiskThresholds(
                k=self.settings.k_anonymity_threshold,
                l=self.settings.l_diversity_threshold,
                t=self.settings.t_closeness_threshold,
            ),
            audit_store=audit_store,
        )
        self._audit = AuditRecorder(audit_store)

    @classmethod
    def in_memory(cls, settings: Settings | None = None, audit: bool = True) -> "PrivacyEngine":
        """Engine backed entirely by process-local stores."""
        return cls(
            key_provider=InMemoryKeyProvider(),
            token_store=InMemoryTokenMappingStore(),
            audit_store=InMemoryAuditStore() if audit else None,
            settings=settings,
        )

    @classmethod
    def from_session_factory(
        cls,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> "PrivacyEngine":
        """Engine persisting keys, token mappings and the audit log in SQL.

        Without a session factory the shared one for ``settings.database_url``
        is used.
        """
        settings = settings or get_settings()
        session_factory = session_factory or get_session_factory(settings.database_url)
        return cls(
            key_provider=SqlKeyProvider(
                session_factory,
                settings.veil_master_key,
                iterations=settings.kdf_iterations,
            ),
            token_store=SqlTokenMappingStore(session_factory),
            audit_store=SqlAuditStore(session_factory),
            settings=settings,
        )

    async def initialize(self) -> str:
        """Create the first key when none is active; return the active key id."""
        algorithm = self.settings.default_key_algorithm
        try:
            return await self.key_provider.get_active_key_id(algorithm)
        except NoActiveKeyError:
            logger.info("No active key found, creating one. Algorithm=%s", algorithm)
            info = await self.key_provider.create_key(algorithm)
            return info.key_id

    async def rotate_key(self, key_id: str, *, actor_id: str | None = None) -> KeyInfo:
        """Rotate *key_id* and append a ``KEY_ROTATED`` audit entry.

        Existing pseudonyms and token mappings are not re-encrypted.
        """
        info = await self.key_provider.rotate_key(key_id)
        await self._audit.record(
            AuditOperation.KEY_ROTATED,
            key_id=info.key_id,
            actor_id=actor_id,
        )
        return info
