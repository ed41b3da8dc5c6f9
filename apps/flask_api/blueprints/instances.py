"""Instance, image, spot and DNS mutations."""

from typing import Any

from flask import Blueprint

from apps.flask_api import runtime
from apps.flask_api.utils import _ok, _params, _require_text, _require_text_list
from contracts.errors import BadRequest
from contracts.requests import InstanceRequest, SpotRequest, parse_tags

instances_bp = Blueprint("instances", __name__)


def _tags_from(payload: dict[str, Any]) -> dict[str, str]:
    raw = payload.get("tags", payload.get("tag"))
    if isinstance(raw, str):
        raw = raw.split(",")
    tags = parse_tags(raw)
    if not tags:
        raise BadRequest("tag is required")
    return tags


@instances_bp.route("/aws/terminate", methods=["DELETE"])
def aws_terminate() -> Any:
    """Terminate instances by id or Name tag."""
    instances = _require_text_list(_params(), "instance")
    svc = runtime.get_services()
    ids = runtime.run(svc.orchestrator.terminate(instances))
    return _ok({"terminated": ids})


@instances_bp.route("/aws/create_image", methods=["POST"])
def aws_create_image() -> Any:
    payload = _params()
    instance = _require_text(payload, "inst_id", "instance")
    name = _require_text(payload, "name")
    svc = runtime.get_services()
    image_id = runtime.run(svc.orchestrator.create_image(instance, name))
    return _ok({"image_id": image_id}, status=201)


@instances_bp.route("/aws/delete_image", methods=["DELETE"])
def aws_delete_image() -> Any:
    ami = _require_text(_params(), "ami")
    svc = runtime.get_services()
    image_id = runtime.run(svc.orchestrator.delete_image(ami))
    return _ok({"image_id": image_id})


@instances_bp.route("/aws/request_spot", methods=["POST"])
def aws_request_spot() -> Any:
    """Submit a spot bid; missing fields take the console defaults."""
    request = SpotRequest.model_validate(_params())
    svc = runtime.get_services()
    request_ids = runtime.run(svc.orchestrator.request_spot(request))
    return _ok({"spot_request_ids": request_ids}, status=201)


@instances_bp.route("/aws/run_instance", methods=["POST"])
def aws_run_instance() -> Any:
    request = InstanceRequest.model_validate(_params())
    svc = runtime.get_services()
    instance_ids = runtime.run(svc.orchestrator.run_instance(request))
    return _ok({"instance_ids": instance_ids}, status=201)


@instances_bp.route("/aws/cancel_spot", methods=["DELETE"])
def aws_cancel_spot() -> Any:
    request_ids = _require_text_list(_params(), "spot_id")
    svc = runtime.get_services()
    runtime.run(svc.orchestrator.cancel_spot(request_ids))
    return _ok({"cancelled": request_ids})


@instances_bp.route("/aws/tag_item", methods=["PATCH"])
def aws_tag_item() -> Any:
    """Tag an instance, volume or snapshot given its id or Name tag."""
    payload = _params()
    item = _require_text(payload, "id")
    tags = _tags_from(payload)
    svc = runtime.get_services()
    resource_id = runtime.run(svc.orchestrator.tag_item(item, tags))
    return _ok({"id": resource_id, "tags": tags})


@instances_bp.route("/aws/update_dns_name", methods=["PATCH"])
def aws_update_dns_name() -> Any:
    """Repoint an A record from ``old_ip`` to ``new_ip``; ``changed`` is False when nothing matched."""
    payload = _params()
    zone = _require_text(payload, "zone")
    dns_name = _require_text(payload, "dns_name")
    old_ip = _require_text(payload, "old_ip")
    new_ip = _require_text(payload, "new_ip")
    svc = runtime.get_services()
    changed = runtime.run(svc.orchestrator.update_dns_name(zone, dns_name, old_ip, new_ip))
    return _ok({"changed": changed})
