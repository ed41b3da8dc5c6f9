"""Inbound email and DMARC report endpoints."""

from typing import Any

from flask import Blueprint

from apps.flask_api import runtime
from apps.flask_api.utils import _err, _ok, _parse_uuid

inbound_email_bp = Blueprint("inbound_email", __name__)


@inbound_email_bp.route("/aws/inbound-email/<email_id>", methods=["GET"])
def aws_get_inbound_email(email_id: str) -> Any:
    svc = runtime.get_services()
    row = runtime.run(svc.inbound_email.get_email(_parse_uuid(email_id)))
    if row is None:
        return _err("not_found", f"email not found: {email_id}", status=404)
    return _ok({"email": row})


@inbound_email_bp.route("/aws/inbound-email/<email_id>", methods=["DELETE"])
def aws_delete_inbound_email(email_id: str) -> Any:
    """Delete the stored message object and its row."""
    svc = runtime.get_services()
    deleted = runtime.run(svc.inbound_email.delete_email(_parse_uuid(email_id)))
    if not deleted:
        return _err("not_found", f"email not found: {email_id}", status=404)
    return _ok({"id": email_id})


@inbound_email_bp.route("/aws/inbound-email/sync", methods=["POST"])
def aws_sync_inbound_email() -> Any:
    svc = runtime.get_services()
    return _ok({"result": runtime.run(svc.inbound_email.sync_db())})


@inbound_email_bp.route("/aws/dmarc/sync", methods=["POST"])
def aws_sync_dmarc() -> Any:
    """Ingest DMARC reports from attachments not processed yet."""
    svc = runtime.get_services()
    return _ok({"rows": runtime.run(svc.dmarc.ingest())})
