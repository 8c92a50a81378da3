from __future__ import annotations

import decimal
from typing import Any, Mapping

from veil.models import AnonymizationTechnique
from veil.techniques.base import Technique

_ZERO_VALUES: dict[type, Any] = {
    bool: False,
    int: 0,
    float: 0.0,
    complex: 0j,
    decimal.Decimal: decimal.Decimal(0),
}


def default_value(value_type: type) -> Any:
    """Zero value for numeric/bool types, ``None`` for everything else."""
    for candidate in type.mro(value_type):
        if candidate in _ZERO_VALUES:
            return _ZERO_VALUES[candidate]
    return None


class SuppressionTechnique(Technique):
    """Replaces any value with its type's default, discarding the input."""

    technique = AnonymizationTechnique.SUPPRESSION

    def can_apply(self, value_type: type) -> bool:
        return True

    def apply(self, value: Any, value_type: type, parameters: Mapping[str, Any]) -> Any:
        return default_value(value_type)
