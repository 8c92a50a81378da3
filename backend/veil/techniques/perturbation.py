from __future__ import annotations

import decimal
import secrets
from typing import Any, Mapping

from veil.models import AnonymizationTechnique
from veil.techniques.base import Technique, float_param, is_finite, is_numeric_type

# SystemRandom draws from os.urandom and is safe to share between tasks.
_rng = secrets.SystemRandom()


class PerturbationTechnique(Technique):
    """Adds proportional random noise to a number.

    The noise fraction is sampled uniformly from ``[-noise_range,
    +noise_range]`` and the result is cast back to the input type (integers
    are rounded).
    """

    technique = AnonymizationTechnique.PERTURBATION

    def __init__(self, default_noise_range: float = 0.1) -> None:
        self._default_noise_range = default_noise_range

    def can_apply(self, value_type: type) -> bool:
        return is_numeric_type(value_type)

    def accepts(self, value: Any) -> bool:
        return is_finite(value)

    def apply(self, value: Any, value_type: type, parameters: Mapping[str, Any]) -> Any:
        noise_range = float_param(parameters, "noise_range", self._default_noise_range)
        fraction = _rng.uniform(-noise_range, noise_range)

        if isinstance(value, decimal.Decimal):
            return value + value * decimal.Decimal(str(fraction))
        perturbed = value + value * fraction
        if issubclass(value_type, int):
            return value_type(round(perturbed))
        return value_type(perturbed)
