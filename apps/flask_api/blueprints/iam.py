"""IAM user, group membership and access-key mutations."""

from typing import Any

from flask import Blueprint

from apps.flask_api import runtime
from apps.flask_api.utils import _ok, _params, _require_text

iam_bp = Blueprint("iam", __name__)


@iam_bp.route("/aws/create_user", methods=["POST"])
def aws_create_user() -> Any:
    user_name = _require_text(_params(), "user_name")
    svc = runtime.get_services()
    return _ok({"user": runtime.run(svc.orchestrator.create_user(user_name))}, status=201)


@iam_bp.route("/aws/delete_user", methods=["DELETE"])
def aws_delete_user() -> Any:
    """Delete a user after removing its access keys and group memberships."""
    user_name = _require_text(_params(), "user_name")
    svc = runtime.get_services()
    runtime.run(svc.orchestrator.delete_user(user_name))
    return _ok({"user_name": user_name})


@iam_bp.route("/aws/add_user_to_group", methods=["PATCH"])
def aws_add_user_to_group() -> Any:
    payload = _params()
    user_name = _require_text(payload, "user_name")
    group_name = _require_text(payload, "group_name")
    svc = runtime.get_services()
    runtime.run(svc.orchestrator.add_user_to_group(user_name, group_name))
    return _ok({"user_name": user_name, "group_name": group_name})


@iam_bp.route("/aws/remove_user_from_group", methods=["DELETE"])
def aws_remove_user_from_group() -> Any:
    payload = _params()
    user_name = _require_text(payload, "user_name")
    group_name = _require_text(payload, "group_name")
    svc = runtime.get_services()
    runtime.run(svc.orchestrator.remove_user_from_group(user_name, group_name))
    return _ok({"user_name": user_name, "group_name": group_name})


@iam_bp.route("/aws/create_access_key", methods=["POST"])
def aws_create_access_key() -> Any:
    """Create an access key; the secret is only returned here."""
    user_name = _require_text(_params(), "user_name")
    svc = runtime.get_services()
    key = runtime.run(svc.orchestrator.create_access_key(user_name))
    return _ok({"access_key": key}, status=201)


@iam_bp.route("/aws/delete_access_key", methods=["DELETE"])
def aws_delete_access_key() -> Any:
    payload = _params()
    user_name = _require_text(payload, "user_name")
    access_key_id = _require_text(payload, "access_key_id")
    svc = runtime.get_services()
    runtime.run(svc.orchestrator.delete_access_key(user_name, access_key_id))
    return _ok({"user_name": user_name, "access_key_id": access_key_id})
