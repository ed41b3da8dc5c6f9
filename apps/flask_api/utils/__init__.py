"""Flask API utilities package.

This package contains shared utilities for the Flask API, organized into focused modules:
- responses: Standardized HTTP response helpers
- params: Query and payload parameter parsing
"""

# Re-export commonly used functions for convenience
from apps.flask_api.utils.params import (
    _coerce_optional_text,
    _coerce_positive_int,
    _coerce_text_list,
    _params,
    _parse_csv_list,
    _parse_int,
    _parse_uuid,
    _q,
    _require_text,
    _require_text_list,
)
from apps.flask_api.utils.responses import _err, _json, _ok

__all__ = [
    # responses
    "_ok",
    "_err",
    "_json",
    # params
    "_q",
    "_params",
    "_require_text",
    "_require_text_list",
    "_parse_int",
    "_parse_csv_list",
    "_parse_uuid",
    "_coerce_optional_text",
    "_coerce_positive_int",
    "_coerce_text_list",
]
