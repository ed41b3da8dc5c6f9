"""Health and metadata endpoints Blueprint.

Provides health checks and the OpenAPI document (JSON and YAML).
"""

from typing import Any

import yaml
from flask import Blueprint, Response, current_app, jsonify

from apps.backend.db import db_conn, fetch_one_dict_conn
from apps.flask_api.utils import _ok
from version import APP_NAME, APP_VERSION

# Create the blueprint
health_bp = Blueprint("health", __name__)

_DOCUMENTED_PREFIXES = ("/aws/", "/health")


@health_bp.route("/health", methods=["GET"])
def health() -> Any:
    """Basic health check endpoint."""
    return jsonify({"ok": True})


@health_bp.route("/aws/health/db", methods=["GET"])
def aws_health_db() -> Any:
    """Database health check endpoint."""
    with db_conn() as conn:
        row = fetch_one_dict_conn(conn, "SELECT 1 AS ok")
    return _ok({"db": bool(row and row.get("ok") == 1)})


@health_bp.route("/aws/openapi/json", methods=["GET"])
def aws_openapi_json() -> Any:
    """OpenAPI 3.0 document as JSON."""
    return jsonify(build_openapi_spec())


@health_bp.route("/aws/openapi/yaml", methods=["GET"])
def aws_openapi_yaml() -> Any:
    """OpenAPI 3.0 document as YAML."""
    body = yaml.safe_dump(build_openapi_spec(), sort_keys=False)
    return Response(body, mimetype="application/yaml")


def _openapi_path(rule: str) -> str:
    """``/aws/systemd_logs/<service>`` -> ``/aws/systemd_logs/{service}``."""
    return rule.replace("<", "{").replace(">", "}")


def _summary(endpoint: str) -> str:
    view = current_app.view_functions.get(endpoint)
    doc = (getattr(view, "__doc__", None) or "").strip()
    return doc.splitlines()[0] if doc else endpoint.rsplit(".", 1)[-1]


def build_openapi_spec() -> dict:
    """Build the OpenAPI document by introspecting the registered routes."""
    paths: dict[str, dict[str, Any]] = {}
    for rule in sorted(current_app.url_map.iter_rules(), key=lambda r: r.rule):
        if not rule.rule.startswith(_DOCUMENTED_PREFIXES):
            continue
        path = _openapi_path(rule.rule)
        ops = paths.setdefault(path, {})
        for method in sorted((rule.methods or set()) - {"HEAD", "OPTIONS"}):
            op: dict[str, Any] = {
                "summary": _summary(rule.endpoint),
                "operationId": rule.endpoint.replace(".", "_"),
                "responses": {"200": {"description": "OK"}},
            }
            if rule.arguments:
                op["parameters"] = [
                    {"name": arg, "in": "path", "required": True, "schema": {"type": "string"}}
                    for arg in sorted(rule.arguments)
                ]
            ops[method.lower()] = op
    return {
        "openapi": "3.0.3",
        "info": {"title": APP_NAME, "version": APP_VERSION, "description": "AWS operator console API"},
        "servers": [{"url": "/"}],
        "components": {"securitySchemes": {"bearerAuth": {"type": "http", "scheme": "bearer"}}},
        "security": [{"bearerAuth": []}],
        "paths": paths,
    }
