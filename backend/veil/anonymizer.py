from __future__ import annotations

import logging
from typing import Any, Sequence

from veil import fields
from veil.audit import AuditRecorder
from veil.errors import (
    AnonymizationError,
    AnonymizationFailedError,
    TechniqueNotApplicableError,
)
from veil.models import (
    AnonymizationResult,
    AuditOperation,
    FieldRule,
    Profile,
)
from veil.stores import AuditStore
from veil.techniques.registry import TechniqueRegistry
from veil.techniques.suppression import default_value

logger = logging.getLogger(__name__)


class Anonymizer:
    """Applies a profile's field rules to data objects. Irreversible."""

    def __init__(
        self,
        registry: TechniqueRegistry,
        audit_store: AuditStore | None = None,
        mask_char: str = "*",
    ) -> None:
        self._registry = registry
        self._audit = AuditRecorder(audit_store)
        self._mask_char = mask_char

    # ------------------------------------------------------------------
    # Single objects
    # ------------------------------------------------------------------

    async def anonymize(
        self,
        data: Any,
        profile: Profile,
        *,
        subject_id: str | None = None,
        actor_id: str | None = None,
    ) -> Any:
        """Return a copy of *data* with every matching rule applied.

        Any rule that cannot be applied fails the whole call.
        """
        result, _ = await self._run(data, profile, strict=True, subject_id=subject_id, actor_id=actor_id)
        return result

    async def anonymize_with_result(
        self,
        data: Any,
        profile: Profile,
        *,
        subject_id: str | None = None,
        actor_id: str | None = None,
    ) -> tuple[Any, AnonymizationResult]:
        """Like :meth:`anonymize`, but also report what was applied.

        Rules whose technique does not accept the field's type are counted as
        skipped instead of failing; an unregistered technique still fails.
        """
        return await self._run(data, profile, strict=False, subject_id=subject_id, actor_id=actor_id)

    async def is_anonymized(self, data: Any) -> bool:
        """Heuristic: more than half the fields look suppressed or masked.

        This is a hint only and must not be used as proof of compliance.
        """
        names = fields.field_names(data)
        if not names:
            return False
        anonymized = sum(
            1 for name in names if self._looks_anonymized(fields.get_field(data, name))
        )
        return anonymized * 2 > len(names)

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    async def anonymize_dataset(
        self,
        records: Sequence[Any],
        profile: Profile,
        *,
        actor_id: str | None = None,
    ) -> list[Any]:
        """Anonymize every record, including dataset-level rules.

        Value rules are applied per record first; dataset techniques such as
        swapping then run once over the whole field.  k-anonymity, l-diversity
        and t-closeness rules are left for the risk assessor.
        """
        value_rules: list[FieldRule] = []
        dataset_rules: list[FieldRule] = []
        for rule in profile.field_rules:
            if rule.is_requirement:
                continue
            if self._registry.is_dataset_technique(rule.technique):
                dataset_rules.append(rule)
            else:
                value_rules.append(rule)

        value_profile = Profile(name=profile.name, field_rules=tuple(value_rules), id=profile.id)
        output = [
            await self.anonymize(record, value_profile, actor_id=actor_id) for record in records
        ]

        for rule in dataset_rules:
            present = [i for i, record in enumerate(output) if fields.has_field(record, rule.field_name)]
            if not present:
                continue
            technique = self._registry.get(rule.technique)
            current = [fields.get_field(output[i], rule.field_name) for i in present]
            try:
                new_values = technique.apply_dataset(current, rule.parameters)
            except AnonymizationError:
                raise
            except Exception as exc:
                raise AnonymizationFailedError(rule.field_name, str(exc)) from exc
            for index, value in zip(present, new_values):
                output[index] = fields.with_updates(output[index], {rule.field_name: value})

            logger.debug(
                "Dataset field anonymized. FieldName=%s, Technique=%s, Records=%d",
                rule.field_name,
                rule.technique.value,
                len(present),
            )
            await self._audit.record(
                AuditOperation.ANONYMIZED,
                technique=rule.technique.value,
                field_name=rule.field_name,
                actor_id=actor_id,
            )

        return output

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        data: Any,
        profile: Profile,
        *,
        strict: bool,
        subject_id: str | None,
        actor_id: str | None,
    ) -> tuple[Any, AnonymizationResult]:
        summary = AnonymizationResult()
        updates: dict[str, Any] = {}

        for rule in profile.field_rules:
            # k, l and t are measured by the risk assessor, not applied here.
            if rule.is_requirement or not fields.has_field(data, rule.field_name):
                continue
            summary.fields_seen += 1

            value = fields.get_field(data, rule.field_name)
            if value is None:
                summary.fields_skipped += 1
                continue

            try:
                updates[rule.field_name] = self._registry.apply(
                    rule.technique,
                    value,
                    rule.parameters,
                    field_name=rule.field_name,
                )
            except TechniqueNotApplicableError as exc:
                if strict:
                    logger.warning(
                        "Field transformation failed. FieldName=%s, Technique=%s, ErrorMessage=%s",
                        rule.field_name,
                        rule.technique.value,
                        exc.message,
                    )
                    raise
                summary.fields_skipped += 1
                continue
            except AnonymizationError:
                raise
            except Exception as exc:
                raise AnonymizationFailedError(rule.field_name, str(exc)) from exc

            summary.fields_transformed += 1
            summary.techniques_applied[rule.field_name] = rule.technique
            logger.debug(
                "Field anonymized. FieldName=%s, Technique=%s", rule.field_name, rule.technique.value
            )

        result = fields.with_updates(data, updates)

        # Evidence is written only once the whole object transformed cleanly.
        for field_name, technique in summary.techniques_applied.items():
            await self._audit.record(
                AuditOperation.ANONYMIZED,
                subject_id=subject_id,
                technique=technique.value,
                field_name=field_name,
                actor_id=actor_id,
            )

        logger.debug(
            "Anonymization completed. Profile=%s, FieldsTransformed=%d, FieldsSkipped=%d",
            profile.name,
            summary.fields_transformed,
            summary.fields_skipped,
        )
        return result, summary

    def _looks_anonymized(self, value: Any) -> bool:
        if value is None:
            return True
        if isinstance(value, str):
            return value == "" or self._mask_char in value
        return value == default_value(type(value)) and default_value(type(value)) is not None
