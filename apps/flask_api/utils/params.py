"""Query and payload parameter parsing helpers for Flask API.

Mutating routes take a JSON body; read routes take query parameters. The
helpers below accept either source so scripted callers can use whichever
is convenient.
"""

import uuid
from typing import Any

from flask import request

from contracts.errors import BadRequest


def _q(name: str, default: str | None = None) -> str | None:
    """Get a query parameter value with optional default.

    Args:
        name: Parameter name
        default: Default value if not present

    Returns:
        Parameter value or default
    """
    v = request.args.get(name)
    if v is None or v == "":
        return default
    return v


def _params() -> dict[str, Any]:
    """Query parameters overlaid with the JSON body (body wins).

    Raises:
        BadRequest: If the body is present but not a JSON object
    """
    merged: dict[str, Any] = {k: v for k, v in request.args.items()}
    if request.content_length or request.is_json:
        payload = request.get_json(silent=True)
        if payload is None:
            if request.is_json:
                raise BadRequest("request body is not valid JSON")
            return merged
        if not isinstance(payload, dict):
            raise BadRequest("request body must be a JSON object")
        merged.update(payload)
    return merged


def _coerce_optional_text(value: Any) -> str | None:
    """Normalize optional API text values to trimmed strings or None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _require_text(payload: dict[str, Any], *keys: str) -> str:
    """First non-empty value among ``keys``.

    Raises:
        BadRequest: If none of the keys carries a value
    """
    for key in keys:
        text = _coerce_optional_text(payload.get(key))
        if text:
            return text
    raise BadRequest(f"{keys[0]} is required")


def _parse_int(value: str | None, *, default: int, min_v: int, max_v: int) -> int:
    """Parse an integer query parameter with bounds checking.

    Raises:
        BadRequest: If value is not a valid integer or out of bounds
    """
    if value is None or value == "":
        return default
    try:
        n = int(value)
    except ValueError as exc:
        raise BadRequest(f"Invalid integer value: {value!r}") from exc
    if n < min_v or n > max_v:
        raise BadRequest(f"Value {n} out of range [{min_v}, {max_v}]")
    return n


def _parse_csv_list(value: str | None) -> list[str] | None:
    """Parse a comma-separated list of values.

    Returns:
        List of trimmed strings, or None if empty
    """
    if not value:
        return None
    items = [x.strip() for x in value.split(",") if x.strip()]
    return items or None


def _coerce_positive_int(value: Any, *, field_name: str) -> int:
    """Parse a required positive integer field from JSON payload data.

    Raises:
        BadRequest: If value is not a valid positive integer
    """
    try:
        n = int(value)
    except (TypeError, ValueError) as exc:
        raise BadRequest(f"{field_name} must be an integer") from exc
    if n <= 0:
        raise BadRequest(f"{field_name} must be > 0")
    return n


def _coerce_text_list(value: Any, *, field_name: str) -> list[str] | None:
    """Normalize list-like API input into a compact list of strings.

    Accepts comma-separated strings or actual lists.

    Raises:
        BadRequest: If value cannot be coerced to a list
    """
    if value is None:
        return None
    if isinstance(value, str):
        items = [x.strip() for x in value.split(",") if x.strip()]
        return items or None
    if isinstance(value, (list, tuple)):
        result = []
        for item in value:
            if item is not None:
                text = str(item).strip()
                if text:
                    result.append(text)
        return result or None
    raise BadRequest(f"{field_name} must be a string or list")


def _require_text_list(payload: dict[str, Any], *keys: str) -> list[str]:
    for key in keys:
        items = _coerce_text_list(payload.get(key), field_name=key)
        if items:
            return items
    raise BadRequest(f"{keys[0]} is required")


def _parse_uuid(value: str, *, field_name: str = "id") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise BadRequest(f"{field_name} must be a UUID") from exc
