from __future__ import annotations

from typing import Any, Mapping

from veil.models import AnonymizationTechnique
from veil.techniques.base import Technique, int_param, mask_char_param


class DataMaskingTechnique(Technique):
    """Masks the middle of a string, keeping a configurable head and tail.

    Parameters: ``preserve_start``, ``preserve_end`` (default 0),
    ``mask_char`` (default ``*``) and ``preserve_domain``.  With
    ``preserve_domain`` an email-shaped value only has its local part masked:
    ``john@example.com`` with ``preserve_start=1`` gives ``j***@example.com``.
    """

    technique = AnonymizationTechnique.DATA_MASKING

    def __init__(self, mask_char: str = "*") -> None:
        self._mask_char = mask_char

    def can_apply(self, value_type: type) -> bool:
        return issubclass(value_type, str)

    def apply(self, value: Any, value_type: type, parameters: Mapping[str, Any]) -> str:
        preserve_start = int_param(parameters, "preserve_start", 0)
        preserve_end = int_param(parameters, "preserve_end", 0)
        mask_char = mask_char_param(parameters, self._mask_char)

        if parameters.get("preserve_domain") and "@" in value:
            local, _, domain = value.rpartition("@")
            if local:
                masked_local = mask(local, preserve_start, preserve_end, mask_char)
                return f"{masked_local}@{domain}"

        return mask(value, preserve_start, preserve_end, mask_char)


def mask(value: str, preserve_start: int, preserve_end: int, mask_char: str) -> str:
    """Mask *value* between the preserved head and tail.

    A value too short to hide anything is masked completely.
    """
    if preserve_start + preserve_end >= len(value):
        return mask_char * len(value)
    tail = value[len(value) - preserve_end :] if preserve_end else ""
    hidden = len(value) - preserve_start - preserve_end
    return value[:preserve_start] + mask_char * hidden + tail
