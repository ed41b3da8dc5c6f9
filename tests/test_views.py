"""Tests for listing row view-models and their action buttons."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from apps.flask_api.views import (
    PROTECTED_NAME,
    backup_snapshot_name,
    instance_actions,
    listing_view,
    row_view,
    spot_actions,
    to_jsonable,
    volume_actions,
    volume_size_options,
)
from contracts.resource_kind import ResourceKind
from contracts.resources import Snapshot, SpotInstanceRequest, Volume
from tests.factories import make_email, make_instance

# midday UTC keeps the local calendar date stable across common timezones
NOON = datetime(2024, 3, 15, 12, tzinfo=timezone.utc)


def _names(actions: list[dict]) -> list[str]:
    return [a["action"] for a in actions]


def test_running_instance_gets_full_button_set() -> None:
    inst = make_instance("i-1", tags={"Name": "web"})
    actions = instance_actions(inst)
    assert _names(actions) == ["status", "create_image", "terminate"]
    assert actions[1]["params"] == {"inst_id": "i-1", "name": "web"}


def test_protected_instance_cannot_be_terminated() -> None:
    inst = make_instance("i-1", tags={"Name": PROTECTED_NAME})
    assert _names(instance_actions(inst)) == ["status"]


def test_stopped_instance_has_no_buttons() -> None:
    assert instance_actions(make_instance("i-1", state="stopped")) == []


def test_only_pending_spot_requests_can_be_cancelled() -> None:
    def _req(status: str) -> SpotInstanceRequest:
        return SpotInstanceRequest("sir-1", 0.1, "ami-1", "m5.large", "one-time", status)

    assert _names(spot_actions(_req("pending-fulfillment"))) == ["cancel_spot"]
    assert _names(spot_actions(_req("pending"))) == ["cancel_spot"]
    assert spot_actions(_req("fulfilled")) == []


def test_volume_size_options_collapse_below_current() -> None:
    assert volume_size_options(8) == [8, 16, 32, 64, 100, 200, 400, 500]
    assert volume_size_options(50) == [50, 64, 100, 200, 400, 500]
    assert volume_size_options(1000) == [1000]


def test_protected_volume_offers_backup_snapshot() -> None:
    vol = Volume("vol-1", "us-east-1a", 8, 100, "in-use", tags={"Name": PROTECTED_NAME})
    actions = volume_actions(vol, now=NOON)
    assert _names(actions) == ["create_snapshot"]
    assert actions[0]["params"]["name"] == "dileptoninthecloud_backup_20240315"


def test_untagged_volume_can_be_deleted_resized_and_tagged() -> None:
    vol = Volume("vol-2", "us-east-1a", 16, 100, "available")
    actions = volume_actions(vol)
    assert _names(actions) == ["delete_volume", "modify_volume", "tag_item"]
    assert actions[1]["params"]["sizes"][0] == 16


def test_backup_name_uses_local_date() -> None:
    assert backup_snapshot_name(NOON) == "dileptoninthecloud_backup_20240315"


def test_to_jsonable_normalises_values() -> None:
    uid = uuid.UUID(int=1)
    out = to_jsonable({"when": NOON, "id": uid, "kind": ResourceKind.SPOT, "tags": ("a",)})
    assert out == {"when": "2024-03-15T12:00:00Z", "id": str(uid), "kind": "spot", "tags": ["a"]}


def test_row_views_per_kind() -> None:
    snap = Snapshot("snap-1", 8, "completed", "100%", tags={"Name": "x"})
    assert _names(row_view(ResourceKind.SNAPSHOT, snap)["actions"]) == ["delete_snapshot"]
    assert row_view(ResourceKind.SCRIPT, "setup.sh") == {"name": "setup.sh", "actions": []}

    systemd = row_view(ResourceKind.SYSTEMD, ("worker", "running"))
    assert systemd["status"] == "running"
    assert _names(systemd["actions"]) == ["start", "stop", "restart", "logs"]

    email = make_email()
    row = row_view(ResourceKind.INBOUND_EMAIL, email)
    assert "raw_email" not in row
    assert row["actions"][0]["path"] == f"/aws/inbound-email/{email.id}"


def test_listing_view_keys_by_wire_value_in_order() -> None:
    listing = {
        ResourceKind.INSTANCES: [make_instance("i-1")],
        ResourceKind.KEY: [],
    }
    view = listing_view(listing)
    assert list(view) == ["instances", "key"]
    assert view["instances"][0]["id"] == "i-1"
