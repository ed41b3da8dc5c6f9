"""HTTP tests for the console API over fake adapters and an in-memory catalog."""

from __future__ import annotations

import uuid
from pathlib import Path

import pytest

import apps.flask_api.flask_app as flask_app
from apps.flask_api import runtime
from contracts.errors import OperationTimeout
from infra.config import Settings
from services.console import build_console_services
from tests.aws_mocks import FakeAwsClient, describe_instances, make_adapters, make_instance_item
from tests.factories import FakeCatalogStore, make_email


def _disable_runtime_guards(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(flask_app, "_schema_gate_enabled", False)
    monkeypatch.setattr(flask_app, "_schema_gate_checked", True)
    monkeypatch.setattr(flask_app, "_API_BEARER_TOKEN", "")
    monkeypatch.setattr(flask_app, "_rate_limits", lambda: (None, None))


@pytest.fixture
def services(monkeypatch, tmp_path: Path):  # type: ignore[no-untyped-def]
    _disable_runtime_guards(monkeypatch)
    settings = Settings.from_env(
        env={"DEFAULT_KEY_NAME": "ops-key", "SCRIPT_DIRECTORY": str(tmp_path), "SYSTEMD_SERVICES": "worker"},
        env_file=tmp_path / "absent.env",
    )
    ec2 = FakeAwsClient(
        responses={
            "describe_instances": describe_instances(make_instance_item("i-web", name="web")),
            "describe_volumes": {
                "Volumes": [
                    {"VolumeId": "vol-1", "AvailabilityZone": "us-east-1a", "Size": 8, "Iops": 100, "State": "available"}
                ]
            },
        }
    )
    svc = build_console_services(settings, aws=make_adapters(ec2=ec2), store=FakeCatalogStore())
    runtime.set_services(svc)
    yield svc
    runtime.set_services(None)


@pytest.fixture
def client(services):  # type: ignore[no-untyped-def]
    return flask_app.app.test_client()


def test_health_is_open(client) -> None:  # type: ignore[no-untyped-def]
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True}


def test_list_returns_rows_with_actions(client) -> None:  # type: ignore[no-untyped-def]
    """Instances always lead the listing; each row carries its buttons."""
    resp = client.get("/aws/list?resource=volume")
    assert resp.status_code == 200
    resources = resp.get_json()["resources"]
    assert list(resources) == ["instances", "volume"]
    assert resources["instances"][0]["id"] == "i-web"
    assert [a["action"] for a in resources["volume"][0]["actions"]][:2] == ["delete_volume", "modify_volume"]
    assert resp.headers["Cache-Control"].startswith("no-store")


def test_unknown_resource_kind_is_bad_request(client) -> None:  # type: ignore[no-untyped-def]
    resp = client.get("/aws/list?resource=bogus")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "bad_request"


def test_missing_launch_default_is_not_configured(client) -> None:  # type: ignore[no-untyped-def]
    resp = client.post("/aws/request_spot", json={"ami": "ami-1", "instance_type": "m5.large"})
    assert resp.status_code == 503
    body = resp.get_json()
    assert body["error"] == "not_configured"
    assert "NO DEFAULT_SECURITY_GROUP" in body["message"]


def test_invalid_launch_payload_is_bad_request(client) -> None:  # type: ignore[no-untyped-def]
    resp = client.post("/aws/request_spot", json={"ami": "ami-1", "instance_type": "m5.large", "price": -1})
    assert resp.status_code == 400


def test_tag_item_requires_tags(client) -> None:  # type: ignore[no-untyped-def]
    resp = client.patch("/aws/tag_item", json={"id": "web"})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "tag is required"


def test_tag_item_resolves_name(client, services) -> None:  # type: ignore[no-untyped-def]
    resp = client.patch("/aws/tag_item", json={"id": "web", "tags": "env:prod"})
    assert resp.status_code == 200
    assert resp.get_json()["id"] == "i-web"


def test_status_timeout_maps_to_504(client, services, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    async def _timeout(instance: str) -> list[str]:
        raise OperationTimeout("get_status", 60)

    monkeypatch.setattr(services.orchestrator, "get_status", _timeout)
    resp = client.get("/aws/instance_status?instance=web")
    assert resp.status_code == 504
    assert resp.get_json()["error"] == "timeout"


def test_prices_join_catalog(client, services) -> None:  # type: ignore[no-untyped-def]
    resp = client.get("/aws/prices?search=zz")
    assert resp.status_code == 200
    assert resp.get_json()["items"] == []


def test_systemd_action_outside_managed_set_is_rejected(client) -> None:  # type: ignore[no-untyped-def]
    resp = client.post("/aws/systemd_action", json={"action": "restart", "service": "sshd"})
    assert resp.status_code == 400


def test_inbound_email_lookup(client, services) -> None:  # type: ignore[no-untyped-def]
    row = make_email()
    services.store.emails[row.id] = row

    found = client.get(f"/aws/inbound-email/{row.id}")
    assert found.status_code == 200
    assert found.get_json()["email"]["subject"] == "hello"

    assert client.get(f"/aws/inbound-email/{uuid.uuid4()}").status_code == 404
    assert client.get("/aws/inbound-email/not-a-uuid").status_code == 400


def test_bearer_token_guards_console_routes(client, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(flask_app, "_API_BEARER_TOKEN", "s3cret")

    assert client.get("/aws/list").status_code == 401
    assert client.get("/aws/list", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/aws/list", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    assert client.get("/health").status_code == 200
    assert client.get("/aws/openapi/json").status_code == 200


def test_openapi_documents_console_routes(client) -> None:  # type: ignore[no-untyped-def]
    resp = client.get("/aws/openapi/json")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["openapi"] == "3.0.3"
    paths = body["paths"]
    assert "get" in paths["/aws/list"]
    assert "post" in paths["/aws/request_spot"]
    assert paths["/aws/systemd_logs/{service}"]["get"]["parameters"][0]["name"] == "service"

    yaml_resp = client.get("/aws/openapi/yaml")
    assert yaml_resp.mimetype == "application/yaml"
    assert b"openapi: 3.0.3" in yaml_resp.data


def test_unknown_route_is_json_404(client) -> None:  # type: ignore[no-untyped-def]
    resp = client.get("/aws/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"
