from __future__ import annotations

import abc
import decimal
import math
from typing import Any, Mapping, Sequence

from veil.errors import InvalidParameterError
from veil.models import AnonymizationTechnique

NUMERIC_TYPES: tuple[type, ...] = (int, float, decimal.Decimal)


def is_numeric_type(value_type: type) -> bool:
    # bool is an int subclass but carries no magnitude worth binning.
    return issubclass(value_type, NUMERIC_TYPES) and not issubclass(value_type, bool)


def is_finite(value: Any) -> bool:
    """False for NaN and infinities; non-numeric values count as finite."""
    if isinstance(value, decimal.Decimal):
        return value.is_finite()
    if isinstance(value, float):
        return math.isfinite(value)
    return True


class Technique(abc.ABC):
    """Transforms one value of a supported type."""

    technique: AnonymizationTechnique

    @abc.abstractmethod
    def can_apply(self, value_type: type) -> bool: ...

    def accepts(self, value: Any) -> bool:
        """Value-level check run after :meth:`can_apply` has passed."""
        return True

    @abc.abstractmethod
    def apply(self, value: Any, value_type: type, parameters: Mapping[str, Any]) -> Any:
        """Return the transformed value.

        Callers must check :meth:`can_apply` first; implementations raise
        ``InvalidParameterError`` for bad parameters.
        """


class DatasetTechnique(abc.ABC):
    """Transforms one field across a whole dataset.

    Techniques such as swapping need at least two records and cannot be
    expressed as a single-value :class:`Technique`.
    """

    technique: AnonymizationTechnique

    @abc.abstractmethod
    def apply_dataset(
        self,
        values: Sequence[Any],
        parameters: Mapping[str, Any],
    ) -> list[Any]:
        """Return the field's new values, index-aligned with *values*."""


# ---------------------------------------------------------------------------
# Parameter parsing
# ---------------------------------------------------------------------------


def int_param(parameters: Mapping[str, Any], name: str, default: int, minimum: int = 0) -> int:
    raw = parameters.get(name, default)
    if isinstance(raw, bool):
        raise InvalidParameterError(name, "expected an integer")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InvalidParameterError(name, f"expected an integer, got {raw!r}") from None
    if value < minimum:
        raise InvalidParameterError(name, f"must be >= {minimum}, got {value}")
    return value


def float_param(
    parameters: Mapping[str, Any],
    name: str,
    default: float,
    minimum: float = 0.0,
    maximum: float | None = None,
) -> float:
    raw = parameters.get(name, default)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidParameterError(name, f"expected a number, got {raw!r}") from None
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise InvalidParameterError(name, f"must be {bounds}, got {value}")
    return value


def mask_char_param(parameters: Mapping[str, Any], default: str = "*") -> str:
    mask_char = parameters.get("mask_char", default)
    if not isinstance(mask_char, str) or len(mask_char) != 1:
        raise InvalidParameterError("mask_char", "must be a single character")
    return mask_char
