"""Uniform field access over the data objects the engine transforms.

Supported shapes: mappings, dataclasses, pydantic models and plain objects
with instance attributes.  Updates always produce a copy; the input is never
mutated.
"""

from __future__ import annotations

import copy
import dataclasses
from collections.abc import Mapping
from typing import Any

_MISSING = object()


def field_names(data: Any) -> list[str]:
    if isinstance(data, Mapping):
        return [str(name) for name in data.keys()]
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        return [f.name for f in dataclasses.fields(data)]
    model_fields = getattr(type(data), "model_fields", None)
    if isinstance(model_fields, dict):
        return list(model_fields)
    return [name for name in vars(data) if not name.startswith("_")]


def has_field(data: Any, name: str) -> bool:
    return get_field(data, name, _MISSING) is not _MISSING


def get_field(data: Any, name: str, default: Any = None) -> Any:
    if isinstance(data, Mapping):
        return data.get(name, default)
    if name not in field_names(data):
        return default
    return getattr(data, name, default)


def with_updates(data: Any, updates: dict[str, Any]) -> Any:
    """Return a deep copy of *data* with *updates* applied."""
    if isinstance(data, Mapping):
        result = copy.deepcopy(dict(data))
        result.update(updates)
        return result
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        return dataclasses.replace(copy.deepcopy(data), **updates)
    if hasattr(data, "model_copy"):
        return data.model_copy(update=updates, deep=True)
    result = copy.deepcopy(data)
    for name, value in updates.items():
        setattr(result, name, value)
    return result
