"""Tests for the resource orchestrator over fake adapters."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path

import pytest

import services.orchestrator as orch_mod
from contracts.catalog import PRICE_ONDEMAND, InstanceFamily, InstanceListRow, InstancePricing
from contracts.errors import BadRequest, ConfigError, OperationTimeout
from contracts.requests import InstanceRequest, SpotRequest
from contracts.resource_kind import CONCRETE_KINDS, ResourceKind
from infra.config import ConsoleConfig
from services.orchestrator import Orchestrator
from services.ssh import SshRunner
from services.subprocess_runner import CommandResult
from tests.aws_mocks import LAUNCH_TIME, FakeAwsClient, describe_instances, make_adapters, make_instance_item, no_sleep
from tests.factories import FakeCatalogStore, make_email


def _console(tmp_path: Path, **overrides) -> ConsoleConfig:
    data = {
        "default_security_group": "sg-default",
        "spot_security_group": "sg-spot",
        "default_key_name": "ops-key",
        "script_directory": str(tmp_path),
        "max_spot_price": 0.25,
    }
    data.update(overrides)
    return ConsoleConfig(**data)


def _ec2(fail_times: dict[str, int] | None = None, **responses) -> FakeAwsClient:
    base = {
        "describe_instances": describe_instances(
            make_instance_item("i-web", name="web", launch_time=LAUNCH_TIME + timedelta(hours=1)),
            make_instance_item("i-old", name="legacy", state="stopped"),
            make_instance_item("i-db", name="db"),
        ),
        "describe_images": {"Images": [{"ImageId": "ami-base", "Name": "base-image", "State": "available"}]},
        "describe_volumes": {
            "Volumes": [
                {
                    "VolumeId": "vol-1",
                    "AvailabilityZone": "us-east-1a",
                    "Size": 8,
                    "Iops": 100,
                    "State": "available",
                    "Tags": [{"Key": "Name", "Value": "data"}],
                }
            ]
        },
        "describe_snapshots": {
            "Snapshots": [{"SnapshotId": "snap-1", "VolumeSize": 8, "State": "completed", "Progress": "100%",
                           "Tags": [{"Key": "Name", "Value": "nightly"}]}]
        },
    }
    base.update(responses)
    return FakeAwsClient(responses=base, fail_times=fail_times)


def _orchestrator(tmp_path: Path, ec2: FakeAwsClient | None = None, **kwargs) -> Orchestrator:
    aws = make_adapters(
        ec2=ec2 or _ec2(),
        iam=kwargs.pop("iam", None),
        route53=kwargs.pop("route53", None),
        s3=kwargs.pop("s3", None),
    )
    return Orchestrator(
        aws,
        console=kwargs.pop("console", None) or _console(tmp_path),
        store=kwargs.pop("store", FakeCatalogStore()),
        sleep=no_sleep,
        tag_attempts=3,
        tag_interval=0.0,
        **kwargs,
    )


def test_list_puts_instances_first_in_request_order(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path)
    listing = asyncio.run(orch.list([ResourceKind.VOLUME, ResourceKind.KEY, ResourceKind.VOLUME]))
    assert list(listing) == [ResourceKind.INSTANCES, ResourceKind.VOLUME, ResourceKind.KEY]
    # running instances first, oldest launch first
    assert [i.id for i in listing[ResourceKind.INSTANCES]] == ["i-db", "i-web", "i-old"]
    assert [v.id for v in listing[ResourceKind.VOLUME]] == ["vol-1"]


def test_list_all_expands_every_kind(tmp_path: Path) -> None:
    store = FakeCatalogStore()
    email = make_email()
    store.emails[email.id] = email
    orch = _orchestrator(tmp_path, store=store)
    listing = asyncio.run(orch.list([ResourceKind.ALL]))
    assert list(listing) == list(CONCRETE_KINDS)
    assert listing[ResourceKind.SYSTEMD] == []
    assert len(listing[ResourceKind.INBOUND_EMAIL]) == 1


def test_instance_cache_refreshed_by_listing(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path)
    asyncio.run(orch.list([]))
    assert orch.cache.generation == 1
    assert {i.id for i in orch.cache.snapshot} == {"i-web", "i-old", "i-db"}


def test_terminate_resolves_names(tmp_path: Path) -> None:
    ec2 = _ec2()
    orch = _orchestrator(tmp_path, ec2)
    ids = asyncio.run(orch.terminate(["web", "i-raw", "legacy"]))
    # stopped instances are not aliasable
    assert ids == ["i-web", "i-raw", "legacy"]
    assert ec2.calls_to("terminate_instances") == [{"InstanceIds": ["i-web", "i-raw", "legacy"]}]


def test_adapter_calls_are_retried(tmp_path: Path) -> None:
    ec2 = _ec2(fail_times={"create_tags": 2})
    orch = _orchestrator(tmp_path, ec2)
    assert asyncio.run(orch.tag_item("web", {"env": "prod"})) == "i-web"
    assert len(ec2.calls_to("create_tags")) == 3


def test_tag_item_falls_back_to_volume_then_snapshot_names(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path)
    assert asyncio.run(orch.tag_item("data", {"env": "prod"})) == "vol-1"
    assert asyncio.run(orch.tag_item("nightly", {"env": "prod"})) == "snap-1"


def test_volume_and_snapshot_actions_resolve_names(tmp_path: Path) -> None:
    ec2 = _ec2(create_volume={"VolumeId": "vol-new"})
    orch = _orchestrator(tmp_path, ec2)

    async def _run():
        return (
            await orch.create_volume("us-east-1a", size=20, snapshot="nightly"),
            await orch.modify_volume("data", 16),
            await orch.attach_volume("data", "web", "/dev/xvdf"),
            await orch.delete_snapshot("nightly"),
        )

    created, modified, attached, deleted = asyncio.run(_run())
    assert created == "vol-new"
    assert ec2.calls_to("create_volume") == [
        {"AvailabilityZone": "us-east-1a", "VolumeType": "standard", "Size": 20, "SnapshotId": "snap-1"}
    ]
    assert modified == "vol-1"
    assert attached == ("vol-1", "i-web")
    assert ec2.calls_to("attach_volume") == [{"VolumeId": "vol-1", "InstanceId": "i-web", "Device": "/dev/xvdf"}]
    assert deleted == "snap-1"


def test_run_instance_fills_defaults_and_resolves_ami(tmp_path: Path) -> None:
    ec2 = _ec2(run_instances={"Instances": [{"InstanceId": "i-new"}]})
    orch = _orchestrator(tmp_path, ec2)
    ids = asyncio.run(orch.run_instance(InstanceRequest(ami="base-image", instance_type="t3.micro", tags=["box"])))
    assert ids == ["i-new"]
    (call,) = ec2.calls_to("run_instances")
    assert call["ImageId"] == "ami-base"
    assert call["SecurityGroupIds"] == ["sg-default"]
    assert call["KeyName"] == "ops-key"
    assert ec2.calls_to("create_tags") == [{"Resources": ["i-new"], "Tags": [{"Key": "Name", "Value": "box"}]}]


def test_run_instance_without_security_group_is_config_error(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path, console=_console(tmp_path, default_security_group=None))
    with pytest.raises(ConfigError, match="NO DEFAULT_SECURITY_GROUP"):
        asyncio.run(orch.run_instance(InstanceRequest(ami="ami-1", instance_type="t3.micro")))


def test_request_spot_tags_instance_in_background(tmp_path: Path) -> None:
    pending = {"SpotInstanceRequests": [{"SpotInstanceRequestId": "sir-1", "SpotPrice": "0.25",
                                         "LaunchSpecification": {"InstanceType": "m5.large", "ImageId": "ami-base"},
                                         "Status": {"Code": "pending-fulfillment"}}]}
    bound = {"SpotInstanceRequests": [dict(pending["SpotInstanceRequests"][0], InstanceId="i-spot")]}
    ec2 = _ec2(
        request_spot_instances={"SpotInstanceRequests": [{"SpotInstanceRequestId": "sir-1"}]},
        describe_spot_instance_requests=[pending, bound],
    )
    orch = _orchestrator(tmp_path, ec2)

    async def _run() -> list[str]:
        ids = await orch.request_spot(SpotRequest(ami="base-image", instance_type="m5.large", tags="worker,env:ci"))
        while orch.pending_tasks:
            await asyncio.sleep(0)
        return ids

    assert asyncio.run(_run()) == ["sir-1"]
    (call,) = ec2.calls_to("request_spot_instances")
    assert call["SpotPrice"] == "0.25"
    assert call["LaunchSpecification"]["SecurityGroupIds"] == ["sg-spot"]
    assert ec2.calls_to("create_tags") == [
        {"Resources": ["i-spot"], "Tags": [{"Key": "Name", "Value": "worker"}, {"Key": "env", "Value": "ci"}]}
    ]


def test_aclose_cancels_pending_tag_propagation(tmp_path: Path) -> None:
    async def _slow(_seconds: float) -> None:
        await asyncio.sleep(3600)

    ec2 = _ec2(
        request_spot_instances={"SpotInstanceRequests": [{"SpotInstanceRequestId": "sir-1"}]},
        describe_spot_instance_requests={"SpotInstanceRequests": []},
    )
    orch = Orchestrator(make_adapters(ec2=ec2), console=_console(tmp_path), sleep=_slow, tag_interval=1.0)

    async def _run() -> int:
        ec2_ok = await orch.request_spot(SpotRequest(ami="ami-x", instance_type="m5.large", tags=["w"]))
        assert ec2_ok == ["sir-1"]
        await asyncio.sleep(0)
        before = orch.pending_tasks
        await orch.aclose()
        return before

    assert asyncio.run(_run()) == 1
    assert orch.pending_tasks == 0


def _ssh(stdout: str = "", *, hang: bool = False) -> SshRunner:
    async def _runner(argv: Sequence[str]) -> CommandResult:
        if hang:
            await asyncio.sleep(3600)
        return CommandResult(argv=tuple(argv), returncode=0, stdout=stdout, stderr="")

    return SshRunner("ubuntu", runner=_runner)


def test_get_status_tails_cloud_init_log(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path, ssh=_ssh("line1\nline2"))
    assert asyncio.run(orch.get_status("web")) == ["line1", "line2"]
    assert asyncio.run(orch.get_status("legacy")) == []


def test_command_times_out(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(orch_mod, "SSH_TIMEOUT_SECONDS", 0.01)
    orch = _orchestrator(tmp_path, ssh=_ssh(hang=True))
    with pytest.raises(OperationTimeout) as excinfo:
        asyncio.run(orch.command("web", "uptime"))
    assert excinfo.value.operation == "command"


def test_connect_returns_ssh_command(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path)
    assert asyncio.run(orch.connect("db")) == "ssh ubuntu@i-db.compute.amazonaws.com"
    assert asyncio.run(orch.connect("nobody")) is None


def test_ami_listing_adds_latest_ubuntu(tmp_path: Path) -> None:
    prefix = "ubuntu/images/hvm-ssd/ubuntu-bionic-18.04-amd64-server"

    def _images(kwargs: dict) -> dict:
        if kwargs["Owners"] == ["099720109477"]:
            return {
                "Images": [
                    {"ImageId": "ami-u1", "Name": f"{prefix}-2023", "State": "available"},
                    {"ImageId": "ami-u2", "Name": f"{prefix}-2024", "State": "available"},
                ]
            }
        return {"Images": [{"ImageId": "ami-base", "Name": "base-image", "State": "available"}]}

    orch = _orchestrator(tmp_path, _ec2(describe_images=_images))
    assert [a.id for a in asyncio.run(orch.get_all_ami_tags())] == ["ami-base", "ami-u2"]


def test_ec2_prices_join_catalog_with_spot(tmp_path: Path) -> None:
    store = FakeCatalogStore()

    async def _seed() -> None:
        await store.upsert_families([InstanceFamily("m5", "General Purpose"), InstanceFamily("c5", "Compute")])
        await store.upsert_instances(
            [
                InstanceListRow("m5.xlarge", "m5", 4, 16.0, "hvm"),
                InstanceListRow("m5.large", "m5", 2, 8.0, "hvm"),
                InstanceListRow("c5.large", "c5", 2, 4.0, "hvm"),
            ]
        )
        await store.upsert_prices([InstancePricing("m5.large", 0.096, PRICE_ONDEMAND, LAUNCH_TIME)])

    asyncio.run(_seed())
    ec2 = _ec2(describe_spot_price_history={"SpotPriceHistory": [{"InstanceType": "m5.large", "SpotPrice": "0.04"}]})
    orch = _orchestrator(tmp_path, ec2, store=store)

    prices = asyncio.run(orch.get_ec2_prices("m5"))
    assert [p.instance_type for p in prices] == ["m5.large", "m5.xlarge"]
    assert prices[0].ondemand_price == 0.096
    assert prices[0].spot_price == 0.04
    assert prices[1].spot_price is None

    assert [p.instance_type for p in asyncio.run(orch.get_ec2_prices(None))] == ["c5.large", "m5.large", "m5.xlarge"]
    assert asyncio.run(orch.get_ec2_prices("zz")) == []


def test_prices_need_a_store(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path, store=None)
    with pytest.raises(ConfigError):
        asyncio.run(orch.get_ec2_prices())


def test_update_dns_name_delegates(tmp_path: Path) -> None:
    route53 = FakeAwsClient(
        responses={
            "list_resource_record_sets": {
                "ResourceRecordSets": [{"Name": "a.example.", "Type": "A", "ResourceRecords": [{"Value": "1.1.1.1"}]}]
            }
        }
    )
    orch = _orchestrator(tmp_path, route53=route53)
    assert asyncio.run(orch.update_dns_name("Z1", "a.example.", "1.1.1.1", "2.2.2.2")) is True
    assert len(route53.calls_to("change_resource_record_sets")) == 1


def _iam_with_keys(*key_ids: str) -> FakeAwsClient:
    return FakeAwsClient(
        responses={
            "list_access_keys": {
                "AccessKeyMetadata": [{"AccessKeyId": k, "UserName": "bob", "Status": "Active"} for k in key_ids]
            },
            "create_access_key": {
                "AccessKey": {
                    "AccessKeyId": "AK3",
                    "UserName": "bob",
                    "Status": "Active",
                    "CreateDate": LAUNCH_TIME,
                    "SecretAccessKey": "s3cr3t",
                }
            },
        }
    )


def test_create_access_key_refuses_a_third_key(tmp_path: Path) -> None:
    iam = _iam_with_keys("AK1", "AK2")
    orch = _orchestrator(tmp_path, iam=iam)
    with pytest.raises(BadRequest, match="already has 2 access keys"):
        asyncio.run(orch.create_access_key("bob"))
    assert iam.calls_to("create_access_key") == []
    assert len(iam.calls_to("list_access_keys")) == 1


def test_create_access_key_below_limit(tmp_path: Path) -> None:
    iam = _iam_with_keys("AK1")
    key = asyncio.run(_orchestrator(tmp_path, iam=iam).create_access_key("bob"))
    assert (key.access_key_id, key.secret_access_key) == ("AK3", "s3cr3t")
    assert iam.calls_to("create_access_key") == [{"UserName": "bob"}]


def test_list_regions_includes_opt_in_status(tmp_path: Path) -> None:
    ec2 = _ec2(
        describe_regions={
            "Regions": [
                {"RegionName": "us-east-1", "OptInStatus": "opt-in-not-required"},
                {"RegionName": "af-south-1", "OptInStatus": "not-opted-in"},
                {"Endpoint": "nameless"},
            ]
        }
    )
    regions = asyncio.run(_orchestrator(tmp_path, ec2=ec2).list_regions())
    assert [(r.name, r.opt_in_status) for r in regions] == [
        ("us-east-1", "opt-in-not-required"),
        ("af-south-1", "not-opted-in"),
    ]
    assert ec2.calls_to("describe_regions") == [{"AllRegions": True}]


def test_bucket_create_list_delete(tmp_path: Path) -> None:
    s3 = FakeAwsClient(
        responses={
            "list_buckets": {"Buckets": [{"Name": "mail"}, {"Name": "reports"}]},
            "create_bucket": {"Location": "/reports"},
        }
    )
    orch = _orchestrator(tmp_path, s3=s3)

    assert asyncio.run(orch.create_bucket("reports")) == "/reports"
    assert asyncio.run(orch.list_buckets()) == ["mail", "reports"]
    asyncio.run(orch.delete_bucket("reports"))
    assert s3.calls_to("create_bucket") == [{"Bucket": "reports"}]
    assert s3.calls_to("delete_bucket") == [{"Bucket": "reports"}]
