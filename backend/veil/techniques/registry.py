from __future__ import annotations

import logging
from typing import Any, Mapping, Union

from veil.errors import TechniqueNotApplicableError, TechniqueNotRegisteredError
from veil.models import AnonymizationTechnique
from veil.techniques.base import DatasetTechnique, Technique
from veil.techniques.generalization import GeneralizationTechnique
from veil.techniques.masking import DataMaskingTechnique
from veil.techniques.perturbation import PerturbationTechnique
from veil.techniques.suppression import SuppressionTechnique
from veil.techniques.swapping import SwappingTechnique

logger = logging.getLogger(__name__)

AnyTechnique = Union[Technique, DatasetTechnique]


class TechniqueRegistry:
    """Strategy table from technique identifier to implementation.

    Populated once at startup; new techniques are added through
    :meth:`register` without touching the anonymizer.
    """

    def __init__(self) -> None:
        self._techniques: dict[AnonymizationTechnique, AnyTechnique] = {}

    def register(self, implementation: AnyTechnique) -> None:
        if implementation.technique in self._techniques:
            logger.info("Replacing registered technique %s", implementation.technique.value)
        self._techniques[implementation.technique] = implementation

    def is_registered(self, technique: AnonymizationTechnique) -> bool:
        return technique in self._techniques

    def registered(self) -> list[AnonymizationTechnique]:
        return list(self._techniques)

    def get(self, technique: AnonymizationTechnique) -> AnyTechnique:
        implementation = self._techniques.get(technique)
        if implementation is None:
            raise TechniqueNotRegisteredError(technique.value)
        return implementation

    def is_dataset_technique(self, technique: AnonymizationTechnique) -> bool:
        return isinstance(self.get(technique), DatasetTechnique)

    def can_apply(self, technique: AnonymizationTechnique, value_type: type) -> bool:
        implementation = self.get(technique)
        return isinstance(implementation, Technique) and implementation.can_apply(value_type)

    def apply(
        self,
        technique: AnonymizationTechnique,
        value: Any,
        parameters: Mapping[str, Any] | None = None,
        value_type: type | None = None,
        field_name: str | None = None,
    ) -> Any:
        """Apply a single-value technique to *value*.

        Raises ``TechniqueNotRegisteredError`` for unknown identifiers and
        ``TechniqueNotApplicableError`` when the implementation rejects the
        value or its type (dataset techniques always do).
        """
        value_type = value_type or type(value)
        implementation = self.get(technique)
        if (
            not isinstance(implementation, Technique)
            or not implementation.can_apply(value_type)
            or not implementation.accepts(value)
        ):
            raise TechniqueNotApplicableError(technique.value, value_type, field_name)
        return implementation.apply(value, value_type, parameters or {})


def build_default_registry(
    mask_char: str = "*",
    noise_range: float = 0.1,
) -> TechniqueRegistry:
    """Registry holding every built-in technique.

    K-anonymity, l-diversity and t-closeness are left unregistered: they are
    dataset requirements checked by the risk assessor, not transforms.
    """
    registry = TechniqueRegistry()
    registry.register(GeneralizationTechnique(mask_char=mask_char))
    registry.register(SuppressionTechnique())
    registry.register(PerturbationTechnique(default_noise_range=noise_range))
    registry.register(DataMaskingTechnique(mask_char=mask_char))
    registry.register(SwappingTechnique())
    return registry
