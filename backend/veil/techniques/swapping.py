from __future__ import annotations

import math
import secrets
from typing import Any, Mapping, Sequence

from veil.models import AnonymizationTechnique
from veil.techniques.base import DatasetTechnique, float_param

_rng = secrets.SystemRandom()


class SwappingTechnique(DatasetTechnique):
    """Exchanges a field's values between randomly paired records.

    The multiset of values (and so every aggregate over the field) is
    unchanged, while the link between a record and its own value is broken.
    ``swap_fraction`` (0..1, default 1.0) is the share of pairs that swap.
    """

    technique = AnonymizationTechnique.SWAPPING

    def apply_dataset(
        self,
        values: Sequence[Any],
        parameters: Mapping[str, Any],
    ) -> list[Any]:
        swap_fraction = float_param(parameters, "swap_fraction", 1.0, maximum=1.0)
        result = list(values)
        if len(result) < 2:
            return result

        order = list(range(len(result)))
        _rng.shuffle(order)
        pairs = [(order[i], order[i + 1]) for i in range(0, len(order) - 1, 2)]
        swap_count = math.ceil(len(pairs) * swap_fraction)

        for left, right in pairs[:swap_count]:
            result[left], result[right] = result[right], result[left]
        return result
