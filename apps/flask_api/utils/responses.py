"""Response helpers for Flask API.

Provides standardized HTTP response formatting for consistent API responses.
"""

from typing import Any, Dict, Optional

from flask import jsonify

from apps.flask_api.views import to_jsonable

# Set from flask_app at import time
_API_DEBUG_ERRORS: bool = False


def set_debug_mode(enabled: bool) -> None:
    """Set debug mode for error responses."""
    global _API_DEBUG_ERRORS
    _API_DEBUG_ERRORS = enabled


def debug_mode() -> bool:
    return _API_DEBUG_ERRORS


def _ok(data: Optional[Dict[str, Any]] = None, *, status: int = 200) -> Any:
    """Create a successful JSON response.

    Args:
        data: Optional dictionary to include in the response; dataclasses,
            datetimes and UUIDs inside it are converted
        status: HTTP status code (default 200)

    Returns:
        Flask response tuple (json, status)
    """
    payload: Dict[str, Any] = {"ok": True}
    if data:
        payload.update(to_jsonable(data))
    return jsonify(payload), status


def _err(
    code: str,
    message: str,
    *,
    status: int,
    extra: Optional[Dict[str, Any]] = None,
) -> Any:
    """Create an error JSON response.

    Args:
        code: Error code (e.g., 'bad_request', 'not_found')
        message: Human-readable error message
        status: HTTP status code
        extra: Optional additional data to include

    Returns:
        Flask response tuple (json, status)
    """
    payload: Dict[str, Any] = {"ok": False, "error": code, "message": message}
    if extra:
        payload.update(extra)
    return jsonify(payload), status


def _json(payload: Dict[str, Any], *, status: int = 200) -> Any:
    """Create a generic JSON response with explicit status code.

    If 'ok' is missing, it is inferred from status.
    """
    if "ok" not in payload:
        payload = dict(payload)
        payload["ok"] = status < 400
    return jsonify(to_jsonable(payload)), status
