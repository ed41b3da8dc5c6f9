"""Volume, snapshot and container-image mutations."""

from typing import Any

from flask import Blueprint

from apps.flask_api import runtime
from apps.flask_api.utils import (
    _coerce_optional_text,
    _coerce_positive_int,
    _ok,
    _params,
    _require_text,
    _require_text_list,
)
from contracts.requests import parse_tags

storage_bp = Blueprint("storage", __name__)


@storage_bp.route("/aws/create_volume", methods=["POST"])
def aws_create_volume() -> Any:
    """Create a volume from a size, a snapshot, or both."""
    payload = _params()
    zone = _require_text(payload, "zoneid", "availability_zone")
    size = payload.get("size")
    svc = runtime.get_services()
    volume_id = runtime.run(
        svc.orchestrator.create_volume(
            zone,
            size=_coerce_positive_int(size, field_name="size") if size not in (None, "") else None,
            snapshot=_coerce_optional_text(payload.get("snapid")),
        )
    )
    return _ok({"volume_id": volume_id}, status=201)


@storage_bp.route("/aws/delete_volume", methods=["DELETE"])
def aws_delete_volume() -> Any:
    volume = _require_text(_params(), "volid")
    svc = runtime.get_services()
    return _ok({"volume_id": runtime.run(svc.orchestrator.delete_volume(volume))})


@storage_bp.route("/aws/modify_volume", methods=["PATCH"])
def aws_modify_volume() -> Any:
    payload = _params()
    volume = _require_text(payload, "volid")
    size = _coerce_positive_int(payload.get("size"), field_name="size")
    svc = runtime.get_services()
    volume_id = runtime.run(svc.orchestrator.modify_volume(volume, size))
    return _ok({"volume_id": volume_id, "size": size})


@storage_bp.route("/aws/attach_volume", methods=["PATCH"])
def aws_attach_volume() -> Any:
    payload = _params()
    volume = _require_text(payload, "volid")
    instance = _require_text(payload, "instance")
    device = _require_text(payload, "device_id", "device")
    svc = runtime.get_services()
    volume_id, instance_id = runtime.run(svc.orchestrator.attach_volume(volume, instance, device))
    return _ok({"volume_id": volume_id, "instance_id": instance_id})


@storage_bp.route("/aws/detach_volume", methods=["DELETE"])
def aws_detach_volume() -> Any:
    volume = _require_text(_params(), "volid")
    svc = runtime.get_services()
    return _ok({"volume_id": runtime.run(svc.orchestrator.detach_volume(volume))})


@storage_bp.route("/aws/create_snapshot", methods=["POST"])
def aws_create_snapshot() -> Any:
    """Snapshot a volume; ``name`` becomes the snapshot's Name tag."""
    payload = _params()
    volume = _require_text(payload, "volid")
    tags = parse_tags(payload.get("tags"))
    name = _coerce_optional_text(payload.get("name"))
    if name:
        tags["Name"] = name
    svc = runtime.get_services()
    snapshot_id = runtime.run(svc.orchestrator.create_snapshot(volume, tags))
    return _ok({"snapshot_id": snapshot_id}, status=201)


@storage_bp.route("/aws/delete_snapshot", methods=["DELETE"])
def aws_delete_snapshot() -> Any:
    snapshot = _require_text(_params(), "snapid")
    svc = runtime.get_services()
    return _ok({"snapshot_id": runtime.run(svc.orchestrator.delete_snapshot(snapshot))})


@storage_bp.route("/aws/delete_ecr_image", methods=["DELETE"])
def aws_delete_ecr_image() -> Any:
    payload = _params()
    repository = _require_text(payload, "reponame")
    digests = _require_text_list(payload, "imageid")
    svc = runtime.get_services()
    runtime.run(svc.orchestrator.delete_ecr_images(repository, digests))
    return _ok({"repository": repository, "deleted": digests})


@storage_bp.route("/aws/cleanup_ecr_images", methods=["DELETE"])
def aws_cleanup_ecr_images() -> Any:
    """Delete untagged images from every repository."""
    svc = runtime.get_services()
    return _ok({"deleted": runtime.run(svc.orchestrator.cleanup_ecr_images())})
