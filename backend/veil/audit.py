from __future__ import annotations

import logging

from veil.errors import AnonymizationError, StoreError
from veil.models import AuditEntry, AuditOperation
from veil.stores import AuditStore

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Writes audit entries when an audit store is configured.

    A failing store is reported as ``StoreError``; the caller's operation
    fails with it rather than completing without evidence.
    """

    def __init__(self, store: AuditStore | None = None) -> None:
        self._store = store

    @property
    def enabled(self) -> bool:
        return self._store is not None

    async def record(
        self,
        operation: AuditOperation,
        *,
        subject_id: str | None = None,
        technique: str | None = None,
        field_name: str | None = None,
        key_id: str | None = None,
        actor_id: str | None = None,
    ) -> AuditEntry | None:
        if self._store is None:
            return None

        entry = AuditEntry(
            operation=operation,
            subject_id=subject_id,
            technique=technique,
            field_name=field_name,
            key_id=key_id,
            actor_id=actor_id,
        )
        try:
            await self._store.add_entry(entry)
        except AnonymizationError:
            logger.warning("Failed to record audit entry. Operation=%s", operation.value)
            raise
        except Exception as exc:
            logger.warning(
                "Failed to record audit entry. Operation=%s, ErrorMessage=%s",
                operation.value,
                exc,
            )
            raise StoreError("add_entry", str(exc)) from exc

        logger.debug(
            "Audit entry recorded. Operation=%s, SubjectId=%s", operation.value, subject_id
        )
        return entry
