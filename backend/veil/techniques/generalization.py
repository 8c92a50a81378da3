from __future__ import annotations

import datetime as dt
import decimal
import math
from typing import Any, Mapping

from veil.models import AnonymizationTechnique
from veil.techniques.base import (
    Technique,
    int_param,
    is_finite,
    is_numeric_type,
    mask_char_param,
)

# Date granularity levels
YEAR = 1
MONTH = 2
DAY = 3


class GeneralizationTechnique(Technique):
    """Coarsens values so that many records share the same representation.

    ``granularity`` is read per type:

    * numbers -- bin width (default 10); ``34`` becomes ``"30-39"``
    * dates -- 1 = year (default), 2 = month, 3+ = day
    * strings -- number of leading characters kept (default 1)
    """

    technique = AnonymizationTechnique.GENERALIZATION

    def __init__(self, mask_char: str = "*") -> None:
        self._mask_char = mask_char

    def can_apply(self, value_type: type) -> bool:
        return (
            is_numeric_type(value_type)
            or issubclass(value_type, (dt.date, str))
        )

    def accepts(self, value: Any) -> bool:
        # NaN and infinities have no bin.
        return is_finite(value)

    def apply(self, value: Any, value_type: type, parameters: Mapping[str, Any]) -> Any:
        if issubclass(value_type, str):
            return self._generalize_string(value, parameters)
        if issubclass(value_type, dt.date):
            return self._generalize_date(value, parameters)
        return self._generalize_number(value, parameters)

    # ------------------------------------------------------------------

    def _generalize_number(self, value: Any, parameters: Mapping[str, Any]) -> str:
        granularity = int_param(parameters, "granularity", 10, minimum=1)
        if isinstance(value, int):
            low = (value // granularity) * granularity
            return f"{low}-{low + granularity - 1}"
        if isinstance(value, decimal.Decimal):
            low_dec = (value // granularity) * granularity
            if value < 0 and low_dec != value:
                # Decimal floor division truncates toward zero.
                low_dec -= granularity
            return f"{low_dec}-{low_dec + granularity}"
        low_float = math.floor(value / granularity) * granularity
        return f"{low_float:g}-{low_float + granularity:g}"

    def _generalize_date(self, value: dt.date, parameters: Mapping[str, Any]) -> dt.date:
        level = int_param(parameters, "granularity", YEAR, minimum=1)
        if level == YEAR:
            truncated = value.replace(month=1, day=1)
        elif level == MONTH:
            truncated = value.replace(day=1)
        else:
            truncated = value
        if isinstance(truncated, dt.datetime):
            truncated = truncated.replace(hour=0, minute=0, second=0, microsecond=0)
        return truncated

    def _generalize_string(self, value: str, parameters: Mapping[str, Any]) -> str:
        keep = int_param(parameters, "granularity", 1, minimum=0)
        mask_char = mask_char_param(parameters, self._mask_char)
        if len(value) <= keep:
            return value
        return value[:keep] + mask_char * (len(value) - keep)
