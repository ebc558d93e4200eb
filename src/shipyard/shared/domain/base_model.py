"""
Base domain model with JSON snapshot support.

Provides automatic camelCase <-> snake_case conversion so run snapshots
written to the state directory read naturally next to the YAML pipeline
definitions. All domain models should inherit from BaseDomainModel.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Type, TypeVar

T = TypeVar("T", bound="BaseDomainModel")


def to_camel_case(snake_str: str) -> str:
    """
    Convert snake_case to camelCase.

    Examples:
        >>> to_camel_case("started_at")
        'startedAt'
        >>> to_camel_case("output_ref")
        'outputRef'
    """
    components = snake_str.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


def to_snake_case(camel_str: str) -> str:
    """
    Convert camelCase to snake_case.

    Examples:
        >>> to_snake_case("dependsOn")
        'depends_on'
        >>> to_snake_case("nonBlocking")
        'non_blocking'
    """
    result = [camel_str[0].lower()]
    for char in camel_str[1:]:
        if char.isupper():
            result.extend(["_", char.lower()])
        else:
            result.append(char)
    return "".join(result)


def _serialize(value: Any) -> Any:
    if isinstance(value, BaseDomainModel):
        return value.to_json()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


@dataclass
class BaseDomainModel:
    """
    Base class for all domain models.

    - to_json() serializes to camelCase
    - from_json() deserializes from camelCase JSON
    - Enum values are serialized by value
    - Dates are serialized as ISO 8601 strings
    """

    def to_json(self) -> Dict[str, Any]:
        """
        Serialize to JSON-compatible dict (camelCase keys).

        Fields whose metadata sets ``serialize=False`` are omitted.
        """
        result: Dict[str, Any] = {}

        for field in fields(self):
            if not field.metadata.get("serialize", True):
                continue
            result[to_camel_case(field.name)] = _serialize(getattr(self, field.name))

        return result

    @classmethod
    def from_json(cls: Type[T], data: Dict[str, Any]) -> T:
        """
        Deserialize from camelCase JSON.

        Enum and datetime fields are converted back from their JSON form.
        Nested models must be handled by subclasses.

        Raises:
            ValueError: If required fields are missing
        """
        kwargs: Dict[str, Any] = {}
        type_hints = _resolve_types(cls)

        for field in fields(cls):
            json_key = to_camel_case(field.name)

            if json_key not in data:
                if field.default is not dataclasses.MISSING or field.default_factory is not dataclasses.MISSING:  # type: ignore[attr-defined]
                    continue
                raise ValueError(f"Missing required field: {json_key}")

            value = data[json_key]
            if value is None:
                kwargs[field.name] = None
                continue

            field_type = type_hints.get(field.name)
            enum_type = _enum_in(field_type)
            if enum_type is not None:
                kwargs[field.name] = enum_type(value)
            elif _is_datetime(field_type) and isinstance(value, str):
                kwargs[field.name] = datetime.fromisoformat(value)
            else:
                kwargs[field.name] = value

        return cls(**kwargs)

    def __str__(self) -> str:
        """String representation for logging."""
        field_strs = [f"{field.name}={getattr(self, field.name)!r}" for field in fields(self)]
        return f"{self.__class__.__name__}({', '.join(field_strs)})"

    def __repr__(self) -> str:
        return self.__str__()


def _resolve_types(cls: type) -> Dict[str, Any]:
    import typing

    try:
        return typing.get_type_hints(cls)
    except Exception:
        return {f.name: f.type for f in fields(cls)}


def _enum_in(field_type: Any) -> type | None:
    import typing

    candidates = typing.get_args(field_type) or (field_type,)
    for candidate in candidates:
        if isinstance(candidate, type) and issubclass(candidate, Enum):
            return candidate
    return None


def _is_datetime(field_type: Any) -> bool:
    import typing

    candidates = typing.get_args(field_type) or (field_type,)
    return datetime in candidates
