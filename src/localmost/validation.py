"""Shape checks for documents loaded from YAML.

Every failure message starts with the dotted field path of the offending
value (``shared.network.allow[1] must be a string``) so it can be shown to
the user as-is.
"""

from __future__ import annotations

from typing import Any, TypeGuard

from .errors import ValidationError

Json = int | float | bool | str | None | list["Json"] | dict[str, "Json"]


def is_json_object(obj: Any) -> TypeGuard[dict[str, Json]]:
    """Checks if an object is a JSON object (YAML mapping)"""
    return isinstance(obj, dict)


def to_json_object(obj: Any, location: str) -> dict[str, Json]:
    """Checks if an object is a JSON object

    Args:
        obj: the object to check
        location: field path used in the exception message

    Raises:
        ValidationError: if it's not a JSON object
    """
    if is_json_object(obj):
        return obj
    raise ValidationError(f"{location} must be an object")


def to_json_array(obj: Any, location: str) -> list[Json]:
    if isinstance(obj, list):
        return obj
    raise ValidationError(f"{location} must be an array")


def stringify(value: Any) -> str:
    """Render a scalar the way workflow env / with values are seen by processes."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
