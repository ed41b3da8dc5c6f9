"""flask_app.py

JSON API for the AWS operator console.

Every route lives in a blueprint (``apps.flask_api.blueprints``); this module
owns the cross-cutting request pipeline:

- access log line per request (``http_request``)
- token-bucket rate limiting per client IP (off unless API_RATE_LIMIT_RPS)
- schema gate: 503 until ``awsapp migrate`` has applied every migration
- bearer-token auth (off when API_BEARER_TOKEN is empty)
- error mapping from the console error hierarchy to HTTP status codes

Env
---
- DATABASE_URL (required for catalog routes) used by apps.backend.db
- API_BEARER_TOKEN, API_RATE_LIMIT_RPS, API_RATE_LIMIT_BURST,
  API_ENFORCE_SCHEMA_GATE, API_DEBUG_ERRORS

Run
---
awsapp serve
"""

from __future__ import annotations

import hmac
import threading
import time
import traceback
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from flask import Flask, Response, abort, request
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from apps.flask_api.blueprints import (
    health_bp,
    host_bp,
    iam_bp,
    inbound_email_bp,
    instances_bp,
    resources_bp,
    storage_bp,
)
from apps.flask_api.utils import _err
from apps.flask_api.utils.responses import set_debug_mode
from contracts.errors import (
    BadRequest,
    ConfigError,
    ConsoleError,
    MissingUnzipError,
    OperationTimeout,
)
from infra.config import get_settings
from infra.logging_config import StructuredLogger, clear_request_context, set_request_context

log = StructuredLogger(__name__)

app = Flask(__name__)
for _bp in (health_bp, resources_bp, instances_bp, storage_bp, iam_bp, host_bp, inbound_email_bp):
    app.register_blueprint(_bp)


# --------------------
# Operational hardening
# --------------------

_API = get_settings().api
_API_DEBUG_ERRORS = bool(_API.debug_errors)
set_debug_mode(_API_DEBUG_ERRORS)

# Routes reachable without auth, rate limiting or the schema gate.
_OPEN_PATHS = {"/health", "/aws/health/db", "/aws/openapi/json", "/aws/openapi/yaml"}


def _merge_vary_header(current: Optional[str], token: str) -> str:
    """Return a Vary header value that includes token exactly once."""
    items = [x.strip() for x in str(current or "").split(",") if x.strip()]
    token_norm = token.strip()
    if token_norm and token_norm.lower() not in {x.lower() for x in items}:
        items.append(token_norm)
    return ", ".join(items)


def _client_ip() -> str:
    return request.headers.get("X-Forwarded-For", request.remote_addr) or "unknown"


def _guarded(path: str) -> bool:
    return path.startswith("/aws/") and path not in _OPEN_PATHS


@app.before_request
def _start_timer() -> None:
    request.environ["_awsapp_t0"] = time.monotonic()
    set_request_context(request_id=request.headers.get("X-Request-Id") or uuid.uuid4().hex, route=request.path)


@app.after_request
def _log_request(resp: Response) -> Response:
    t0 = float(request.environ.get("_awsapp_t0") or 0.0)
    ms = int(max(0.0, (time.monotonic() - t0) * 1000.0)) if t0 else None
    log.info(
        "http_request",
        method=request.method,
        path=request.path,
        status=int(getattr(resp, "status_code", 0) or 0),
        ms=ms,
        ip=_client_ip(),
        ua=request.headers.get("User-Agent", ""),
    )

    # Live cloud state must never be served stale from intermediary caches.
    if (request.path or "").startswith("/aws/"):
        resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        resp.headers["Pragma"] = "no-cache"
        resp.headers["Expires"] = "0"
        resp.headers["Vary"] = _merge_vary_header(resp.headers.get("Vary"), "Authorization")
    return resp


@app.teardown_request
def _clear_context(_: Optional[BaseException]) -> None:
    clear_request_context()


class _TokenBucket:
    __slots__ = ("capacity", "tokens", "fill_rate", "last")

    def __init__(self, capacity: float, fill_rate: float) -> None:
        self.capacity = float(capacity)
        self.tokens = float(capacity)
        self.fill_rate = float(fill_rate)
        self.last = time.monotonic()

    def allow(self, cost: float = 1.0) -> bool:
        now = time.monotonic()
        elapsed = max(0.0, now - self.last)
        self.last = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.fill_rate)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


_rate_lock = threading.Lock()
_rate_buckets: Dict[str, _TokenBucket] = {}
_schema_gate_lock = threading.Lock()
_schema_gate_checked = False
_schema_gate_enabled = bool(_API.enforce_schema_gate)


def _rate_limits() -> Tuple[Optional[float], Optional[float]]:
    rps = _API.rate_limit_rps
    if rps is None or rps <= 0:
        return None, None
    burst = _API.rate_limit_burst
    if burst is None:
        burst = max(10.0, rps * 2.0)
    return rps, burst


def _rate_key() -> str:
    path = request.path or ""
    # mutations and reads drain separate buckets
    group = "read" if request.method == "GET" else "write"
    if path.startswith("/aws/list") or path.startswith("/aws/prices"):
        group = "listing"
    return f"{_client_ip()}|{group}"


@app.before_request
def _enforce_rate_limit() -> None:
    path = request.path or ""
    if not _guarded(path):
        return

    rps, burst = _rate_limits()
    if rps is None or burst is None:
        return

    key = _rate_key()
    with _rate_lock:
        bucket = _rate_buckets.get(key)
        if bucket is None:
            bucket = _TokenBucket(capacity=burst, fill_rate=rps)
            _rate_buckets[key] = bucket
        allowed = bucket.allow(1.0)

    if not allowed:
        log.warning("rate_limited", key=key, path=path)
        abort(429)


def _schema_migrations_dir() -> Path:
    """Return the repository-local migrations directory used by schema gate."""
    return Path(__file__).resolve().parents[2] / "migrations"


def _ensure_schema_gate() -> None:
    """Run DB schema gate once per process."""
    global _schema_gate_checked
    if not _schema_gate_enabled or _schema_gate_checked:
        return
    with _schema_gate_lock:
        if _schema_gate_checked:
            return
        from apps.backend.db_migrate import ensure_schema_current

        ensure_schema_current(migrations_dir=_schema_migrations_dir())
        _schema_gate_checked = True


@app.before_request
def _enforce_schema_gate() -> Optional[Any]:
    """Return 503 if the DB schema is behind local code migrations."""
    if not _guarded(request.path or ""):
        return None
    try:
        _ensure_schema_gate()
    except RuntimeError as exc:
        log.error("schema_gate_failed", detail=str(exc))
        return _err("schema_mismatch", str(exc), status=503)
    return None


# --------------------
# Auth (Bearer token)
# --------------------

# If API_BEARER_TOKEN is unset/empty, authentication is disabled (useful for
# local dev). Otherwise every guarded route requires:
#   Authorization: Bearer <token>
_API_BEARER_TOKEN = (_API.bearer_token or "").strip()


def _is_auth_required() -> bool:
    return bool(_API_BEARER_TOKEN)


def _check_bearer_token() -> None:
    """Abort with 401 if the bearer token is missing or wrong."""
    if not _is_auth_required():
        return

    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        abort(401)

    token = auth[len("Bearer ") :].strip()
    # constant-time comparison
    if not hmac.compare_digest(token, _API_BEARER_TOKEN):
        abort(401)


@app.before_request
def _enforce_api_auth() -> None:
    """Enforce bearer auth on every /aws/ route except health and OpenAPI."""
    if not _guarded(request.path or ""):
        return
    _check_bearer_token()


# --------------------
# Error mapping
# --------------------

@app.errorhandler(BadRequest)
@app.errorhandler(ValidationError)
@app.errorhandler(ValueError)
def _err_400(exc: Exception) -> Any:
    if isinstance(exc, ValidationError):
        message = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()
        )
        return _err("bad_request", message, status=400)
    return _err("bad_request", str(exc), status=400)


@app.errorhandler(ConfigError)
def _err_config(exc: ConfigError) -> Any:
    return _err("not_configured", str(exc), status=503)


@app.errorhandler(MissingUnzipError)
def _err_unzip(exc: MissingUnzipError) -> Any:
    return _err("missing_dependency", str(exc), status=500)


@app.errorhandler(OperationTimeout)
def _err_504(exc: OperationTimeout) -> Any:
    return _err("timeout", str(exc), status=504)


@app.errorhandler(401)
def _err_401(_: Exception) -> Any:
    return _err("unauthorized", "missing or invalid bearer token", status=401)


@app.errorhandler(404)
def _err_404(_: Exception) -> Any:
    return _err("not_found", f"no route for {request.path}", status=404)


@app.errorhandler(405)
def _err_405(_: Exception) -> Any:
    return _err("method_not_allowed", f"{request.method} not allowed on {request.path}", status=405)


@app.errorhandler(429)
def _err_429(_: Exception) -> Any:
    return _err("rate_limited", "too many requests", status=429)


@app.errorhandler(ConsoleError)
@app.errorhandler(500)
def _err_500(exc: Exception) -> Any:
    if isinstance(exc, HTTPException) and getattr(exc, "original_exception", None) is not None:
        exc = exc.original_exception  # type: ignore[assignment]
    if _API_DEBUG_ERRORS:
        tb = traceback.format_exc()
        log.error("unhandled_exception", path=request.path, detail=str(exc), traceback=tb)
        return _err("internal_error", "internal error", status=500, extra={"detail": str(exc), "traceback": tb})
    log.error("unhandled_exception", path=request.path, detail=str(exc))
    return _err("internal_error", "internal error", status=500)


def main() -> None:
    from apps.flask_api import runtime

    api = get_settings().api
    try:
        app.run(host=api.host, port=api.port, threaded=True)
    finally:
        runtime.shutdown()


if __name__ == "__main__":
    main()
