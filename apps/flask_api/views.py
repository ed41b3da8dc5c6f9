"""Row view-models for the resource listings.

Each listed row is serialised to JSON together with an ``actions`` list
describing the buttons an operator gets for it: the verb, the route, and
the parameters the route expects. The dashboard renders these; the rules
for which buttons appear live here.
"""

from __future__ import annotations

import dataclasses
import enum
import uuid
from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import Any, Optional

from contracts.catalog import InboundEmail
from contracts.resource_kind import ResourceKind
from contracts.resources import (
    AccessKeyMeta,
    Ami,
    EcrImage,
    Ec2Instance,
    IamGroup,
    IamUserDetail,
    Snapshot,
    SpotInstanceRequest,
    Volume,
)

PROTECTED_NAME = "ddbolineinthecloud"
BACKUP_SNAPSHOT_PREFIX = "dileptoninthecloud_backup_"
CANCELLABLE_SPOT_STATUSES = frozenset({"pending", "pending-fulfillment"})
VOLUME_SIZES = (8, 16, 32, 64, 100, 200, 400, 500)


def to_jsonable(value: Any) -> Any:
    """Dataclasses, datetimes, UUIDs and enums into plain JSON values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return value


def _action(name: str, method: str, path: str, /, **params: Any) -> dict[str, Any]:
    return {"action": name, "method": method, "path": path, "params": params}


def backup_snapshot_name(now: Optional[datetime] = None) -> str:
    """``dileptoninthecloud_backup_YYYYMMDD`` for today's local date."""
    local = (now or datetime.now(timezone.utc)).astimezone()
    return f"{BACKUP_SNAPSHOT_PREFIX}{local:%Y%m%d}"


def volume_size_options(current: int) -> list[int]:
    """Resize choices; sizes below ``current`` collapse onto ``current``."""
    out: list[int] = []
    for size in VOLUME_SIZES:
        size = max(size, current)
        if not out or out[-1] != size:
            out.append(size)
    return out


def instance_actions(inst: Ec2Instance) -> list[dict[str, Any]]:
    actions: list[dict[str, Any]] = []
    if not inst.is_running:
        return actions
    actions.append(_action("status", "GET", "/aws/instance_status", instance=inst.id))
    name = inst.name or ""
    if name != PROTECTED_NAME:
        actions.append(_action("create_image", "POST", "/aws/create_image", inst_id=inst.id, name=name))
        actions.append(_action("terminate", "DELETE", "/aws/terminate", instance=inst.id))
    return actions


def spot_actions(req: SpotInstanceRequest) -> list[dict[str, Any]]:
    if req.status in CANCELLABLE_SPOT_STATUSES:
        return [_action("cancel_spot", "DELETE", "/aws/cancel_spot", spot_id=req.id)]
    return []


def volume_actions(vol: Volume, *, now: Optional[datetime] = None) -> list[dict[str, Any]]:
    actions: list[dict[str, Any]] = []
    if vol.name == PROTECTED_NAME:
        actions.append(
            _action(
                "create_snapshot",
                "POST",
                "/aws/create_snapshot",
                volid=vol.id,
                name=backup_snapshot_name(now),
            )
        )
    else:
        actions.append(_action("delete_volume", "DELETE", "/aws/delete_volume", volid=vol.id))
        actions.append(
            _action(
                "modify_volume",
                "PATCH",
                "/aws/modify_volume",
                volid=vol.id,
                sizes=volume_size_options(vol.size),
            )
        )
    if not vol.tags:
        actions.append(_action("tag_item", "PATCH", "/aws/tag_item", id=vol.id))
    return actions


def snapshot_actions(snap: Snapshot) -> list[dict[str, Any]]:
    actions = [_action("delete_snapshot", "DELETE", "/aws/delete_snapshot", snapid=snap.id)]
    if not snap.tags:
        actions.append(_action("tag_item", "PATCH", "/aws/tag_item", id=snap.id))
    return actions


def ami_actions(ami: Ami) -> list[dict[str, Any]]:
    return [_action("delete_image", "DELETE", "/aws/delete_image", ami=ami.id)]


def ecr_actions(image: EcrImage) -> list[dict[str, Any]]:
    return [
        _action(
            "delete_ecr_image",
            "DELETE",
            "/aws/delete_ecr_image",
            reponame=image.repository,
            imageid=image.digest,
        )
    ]


def user_actions(detail: IamUserDetail) -> list[dict[str, Any]]:
    name = detail.user.user_name
    actions = [
        _action("remove_user_from_group", "DELETE", "/aws/remove_user_from_group", user_name=name, group_name=g)
        for g in detail.groups
    ]
    actions.append(_action("create_access_key", "POST", "/aws/create_access_key", user_name=name))
    actions.append(_action("delete_user", "DELETE", "/aws/delete_user", user_name=name))
    return actions


def group_actions(group: IamGroup) -> list[dict[str, Any]]:
    return [_action("add_user_to_group", "PATCH", "/aws/add_user_to_group", group_name=group.group_name)]


def access_key_actions(key: AccessKeyMeta) -> list[dict[str, Any]]:
    return [
        _action(
            "delete_access_key",
            "DELETE",
            "/aws/delete_access_key",
            user_name=key.user_name,
            access_key_id=key.access_key_id,
        )
    ]


def email_actions(email: InboundEmail) -> list[dict[str, Any]]:
    path = f"/aws/inbound-email/{email.id}"
    return [_action("view", "GET", path), _action("delete", "DELETE", path)]


def systemd_row(service: str, status: str) -> dict[str, Any]:
    actions = [
        _action(verb, "POST", "/aws/systemd_action", action=verb, service=service)
        for verb in ("start", "stop", "restart")
    ]
    actions.append(_action("logs", "GET", f"/aws/systemd_logs/{service}"))
    return {"service": service, "status": status, "actions": actions}


def row_view(kind: ResourceKind, item: Any, *, now: Optional[datetime] = None) -> dict[str, Any]:
    """One listing row plus its ``actions``."""
    if kind is ResourceKind.SYSTEMD:
        service, status = item
        return systemd_row(service, status)
    if kind is ResourceKind.SCRIPT:
        return {"name": item, "actions": []}
    if kind is ResourceKind.INBOUND_EMAIL:
        row = {
            "id": str(item.id),
            "from_address": item.from_address,
            "to_address": item.to_address,
            "subject": item.subject,
            "date": to_jsonable(item.date),
        }
        row["actions"] = email_actions(item)
        return row

    row = to_jsonable(item)
    if not isinstance(row, dict):
        row = {"value": row}
    match kind:
        case ResourceKind.INSTANCES:
            row["actions"] = instance_actions(item)
        case ResourceKind.SPOT:
            row["actions"] = spot_actions(item)
        case ResourceKind.VOLUME:
            row["actions"] = volume_actions(item, now=now)
        case ResourceKind.SNAPSHOT:
            row["actions"] = snapshot_actions(item)
        case ResourceKind.AMI:
            row["actions"] = ami_actions(item)
        case ResourceKind.ECR:
            row["actions"] = ecr_actions(item)
        case ResourceKind.USER:
            row["actions"] = user_actions(item)
        case ResourceKind.GROUP:
            row["actions"] = group_actions(item)
        case ResourceKind.ACCESS_KEY:
            row["actions"] = access_key_actions(item)
        case _:
            row["actions"] = []
    return row


def listing_view(listing: dict[ResourceKind, Iterable[Any]], *, now: Optional[datetime] = None) -> dict[str, Any]:
    """``{kind: [row, ...]}`` keyed by wire value, in listing order."""
    return {kind.value: [row_view(kind, item, now=now) for item in items] for kind, items in listing.items()}


__all__ = [
    "BACKUP_SNAPSHOT_PREFIX",
    "CANCELLABLE_SPOT_STATUSES",
    "PROTECTED_NAME",
    "backup_snapshot_name",
    "instance_actions",
    "listing_view",
    "row_view",
    "snapshot_actions",
    "spot_actions",
    "to_jsonable",
    "volume_actions",
    "volume_size_options",
]
