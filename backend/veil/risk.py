"""
Re-identification risk assessment over a (transformed) dataset.

Metrics
-------
k-anonymity
    Size of the smallest equivalence class, where a class is the set of
    records sharing the same quasi-identifier values.  The worst-case
    re-identification probability is ``1 / k``.
l-diversity
    Smallest number of distinct sensitive values found in any class
    (distinct l-diversity, Machanavajjhala et al. 2006).
t-closeness
    Largest Earth Mover's Distance between a class's sensitive-value
    distribution and the dataset's overall distribution (Li, Li and
    Venkatasubramanian 2007).  Numeric attributes use the ordered distance,
    categorical ones the equal distance.

The assessor measures only; persisting the result is up to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Sequence

import numpy as np
import pandas as pd

from veil import fields
from veil.audit import AuditRecorder
from veil.errors import RiskAssessmentFailedError
from veil.models import (
    AnonymizationTechnique,
    AuditOperation,
    Profile,
    RiskAssessmentResult,
    RiskThresholds,
)
from veil.stores import AuditStore

logger = logging.getLogger(__name__)

MIN_RECORDS = 2


class RiskAssessor:
    def __init__(
        self,
        thresholds: RiskThresholds | None = None,
        sensitive_attribute: str | None = None,
        audit_store: AuditStore | None = None,
    ) -> None:
        self._thresholds = thresholds or RiskThresholds()
        self._sensitive_attribute = sensitive_attribute
        self._audit = AuditRecorder(audit_store)

    @property
    def thresholds(self) -> RiskThresholds:
        return self._thresholds

    async def assess(
        self,
        dataset: pd.DataFrame | Sequence[Any],
        quasi_identifiers: Sequence[str],
        sensitive_attribute: str | None = None,
        *,
        thresholds: RiskThresholds | None = None,
        actor_id: str | None = None,
    ) -> RiskAssessmentResult:
        """Compute k, l, t and the re-identification probability.

        Raises ``RiskAssessmentFailedError`` for fewer than two records, an
        empty quasi-identifier list, or columns missing from the dataset.
        Without a sensitive attribute only k-anonymity is judged and
        ``l_diversity``/``t_closeness`` are ``None``.
        """
        thresholds = thresholds or self._thresholds
        sensitive = sensitive_attribute or self._sensitive_attribute
        qids = list(quasi_identifiers)

        df = to_frame(dataset)
        size = len(df)
        if size < MIN_RECORDS:
            logger.warning(
                "Risk assessment failed. DatasetSize=%d, ErrorMessage=too few records", size
            )
            raise RiskAssessmentFailedError(
                f"At least {MIN_RECORDS} records are required, got {size}", dataset_size=size
            )
        if not qids:
            raise RiskAssessmentFailedError("At least one quasi-identifier is required")
        missing = [c for c in qids + ([sensitive] if sensitive else []) if c not in df.columns]
        if missing:
            logger.warning(
                "Risk assessment failed. DatasetSize=%d, ErrorMessage=missing columns %s",
                size,
                missing,
            )
            raise RiskAssessmentFailedError(
                f"Dataset is missing columns: {', '.join(missing)}", missing=missing
            )

        groups = df.groupby(
            qids if len(qids) > 1 else qids[0], dropna=False, sort=False, observed=True
        )
        k = int(groups.size().min())
        probability = 1.0 / k

        l_value: int | None = None
        t_value: float | None = None
        if sensitive:
            l_value = int(groups[sensitive].nunique(dropna=False).min())
            t_value = compute_t_closeness(df, groups, sensitive)

        recommendations = _recommend(thresholds, qids, sensitive, k, l_value, t_value)
        acceptable = not recommendations

        result = RiskAssessmentResult(
            k_anonymity=k,
            l_diversity=l_value,
            t_closeness=t_value,
            re_identification_probability=probability,
            is_acceptable=acceptable,
            recommendations=recommendations,
        )

        logger.info(
            "Risk assessment completed. DatasetSize=%d, KAnonymity=%d, LDiversity=%s, IsAcceptable=%s",
            size,
            k,
            l_value,
            acceptable,
        )
        if not acceptable:
            logger.warning(
                "Re-identification risk threshold exceeded. Probability=%.4f, KAnonymity=%d",
                probability,
                k,
            )

        await self._audit.record(
            AuditOperation.RISK_ASSESSED,
            field_name=sensitive,
            actor_id=actor_id,
        )
        return result

    async def assess_profile(
        self,
        dataset: pd.DataFrame | Sequence[Any],
        profile: Profile,
        *,
        actor_id: str | None = None,
    ) -> RiskAssessmentResult:
        """Assess *dataset* against the requirements declared in *profile*."""
        thresholds, qids, sensitive = thresholds_from_profile(profile, self._thresholds)
        return await self.assess(
            dataset,
            qids,
            sensitive or self._sensitive_attribute,
            thresholds=thresholds,
            actor_id=actor_id,
        )


# ---------------------------------------------------------------------------
# Profile requirements
# ---------------------------------------------------------------------------


def thresholds_from_profile(
    profile: Profile,
    defaults: RiskThresholds | None = None,
) -> tuple[RiskThresholds, list[str], str | None]:
    """Read dataset-level privacy requirements from a profile.

    * the ``K_ANONYMITY`` rule gives ``k`` and ``quasi_identifiers``
    * the ``L_DIVERSITY`` rule's field is the sensitive attribute, with ``l``
    * the ``T_CLOSENESS`` rule gives ``t``

    Returns ``(thresholds, quasi_identifiers, sensitive_attribute)``.
    """
    defaults = defaults or RiskThresholds()
    k, l_min, t_max = defaults.k, defaults.l, defaults.t
    qids: list[str] = []
    sensitive: str | None = None

    for rule in profile.rules_for(AnonymizationTechnique.K_ANONYMITY):
        k = int(rule.parameters.get("k", k))
        qids.extend(rule.parameters.get("quasi_identifiers", ()))
    for rule in profile.rules_for(AnonymizationTechnique.L_DIVERSITY):
        l_min = int(rule.parameters.get("l", l_min))
        sensitive = rule.field_name
    for rule in profile.rules_for(AnonymizationTechnique.T_CLOSENESS):
        t_max = float(rule.parameters.get("t", t_max))
        sensitive = sensitive or rule.field_name

    if not qids:
        raise RiskAssessmentFailedError(
            f"Profile '{profile.name}' declares no quasi-identifiers"
        )
    # Preserve declaration order, drop duplicates.
    qids = list(dict.fromkeys(qids))
    return RiskThresholds(k=k, l=l_min, t=t_max), qids, sensitive


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def to_frame(dataset: pd.DataFrame | Sequence[Any]) -> pd.DataFrame:
    if isinstance(dataset, pd.DataFrame):
        return dataset
    rows = []
    for record in dataset:
        if isinstance(record, Mapping):
            rows.append(dict(record))
        else:
            rows.append({name: fields.get_field(record, name) for name in fields.field_names(record)})
    return pd.DataFrame(rows)


def compute_t_closeness(df: pd.DataFrame, groups: Any, sensitive: str) -> float:
    """Maximum EMD between any class and the global sensitive distribution."""
    column = df[sensitive]
    ordered = pd.api.types.is_numeric_dtype(column) and not pd.api.types.is_bool_dtype(column)

    domain = column.value_counts(dropna=False, normalize=True)
    if ordered:
        domain = domain.sort_index()
    global_dist = domain.to_numpy(dtype=float)

    worst = 0.0
    for _, block in groups:
        class_dist = (
            block[sensitive]
            .value_counts(dropna=False, normalize=True)
            .reindex(domain.index, fill_value=0.0)
            .to_numpy(dtype=float)
        )
        if ordered:
            distance = ordered_emd(class_dist, global_dist)
        else:
            distance = equal_emd(class_dist, global_dist)
        worst = max(worst, distance)
    return float(worst)


def equal_emd(p: np.ndarray, q: np.ndarray) -> float:
    """EMD with unit ground distance between any two distinct values."""
    return float(0.5 * np.abs(p - q).sum())


def ordered_emd(p: np.ndarray, q: np.ndarray) -> float:
    """EMD over ``m`` ordered values with ground distance ``|i - j| / (m - 1)``."""
    m = len(p)
    if m < 2:
        return 0.0
    return float(np.abs(np.cumsum(p - q)).sum() / (m - 1))


def _recommend(
    thresholds: RiskThresholds,
    qids: list[str],
    sensitive: str | None,
    k: int,
    l_value: int | None,
    t_value: float | None,
) -> list[str]:
    recommendations: list[str] = []
    if k < thresholds.k:
        recommendations.append(
            f"k-anonymity is {k}, below the required {thresholds.k}: coarsen the "
            f"generalization granularity of {', '.join(qids)} or suppress records in "
            f"equivalence classes smaller than {thresholds.k}."
        )
    if l_value is not None and l_value < thresholds.l:
        recommendations.append(
            f"l-diversity of '{sensitive}' is {l_value}, below the required {thresholds.l}: "
            f"merge equivalence classes by generalizing quasi-identifiers further, or "
            f"generalize '{sensitive}' itself."
        )
    if t_value is not None and t_value > thresholds.t:
        recommendations.append(
            f"t-closeness of '{sensitive}' is {t_value:.3f}, above the allowed {thresholds.t}: "
            f"equivalence classes skew the distribution of '{sensitive}'; enlarge classes "
            f"or perturb the sensitive values."
        )
    return recommendations
