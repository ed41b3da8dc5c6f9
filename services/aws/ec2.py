"""EC2 adapter: instances, spot, images, volumes, snapshots, keys, regions.

Listings drop any record missing a required field instead of failing the
whole call. Mutations return the provider identifiers they create.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import timedelta
from typing import Any

from contracts.resources import (
    Ami,
    Ec2Instance,
    KeyPair,
    Region,
    ReservedInstance,
    SecurityGroup,
    Snapshot,
    SpotInstanceRequest,
    Volume,
)
from infra.logging_config import StructuredLogger
from services.aws._common import call, collect, now_utc, safe_float, safe_int, tag_list, tag_map, utc

log = StructuredLogger(__name__)


UBUNTU_OWNER_ID = "099720109477"
SPOT_AVAILABILITY_ZONES = tuple(f"us-east-1{suffix}" for suffix in "abcdef")
SPOT_LOOKBACK = timedelta(hours=4)


def _require(item: Mapping[str, Any], *keys: str) -> Any:
    value: Any = item
    for key in keys:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def parse_instance(item: Mapping[str, Any]) -> Ec2Instance | None:
    """Normalise one ``Reservations[].Instances[]`` entry (None if incomplete)."""
    instance_id = item.get("InstanceId")
    dns_name = item.get("PublicDnsName")
    state = _require(item, "State", "Name")
    instance_type = item.get("InstanceType")
    availability_zone = _require(item, "Placement", "AvailabilityZone")
    launch_time = utc(item.get("LaunchTime"))
    if not all((instance_id, dns_name, state, instance_type, availability_zone, launch_time)):
        return None
    return Ec2Instance(
        id=str(instance_id),
        dns_name=str(dns_name),
        state=str(state),
        instance_type=str(instance_type),
        availability_zone=str(availability_zone),
        launch_time=launch_time,
        tags=tag_map(item.get("Tags")),
    )


def parse_spot_request(item: Mapping[str, Any]) -> SpotInstanceRequest | None:
    request_id = item.get("SpotInstanceRequestId")
    launch = item.get("LaunchSpecification") or {}
    instance_type = launch.get("InstanceType")
    imageid = launch.get("ImageId")
    if not request_id or not instance_type or not imageid:
        return None
    return SpotInstanceRequest(
        id=str(request_id),
        price=safe_float(item.get("SpotPrice"), default=0.0),
        imageid=str(imageid),
        instance_type=str(instance_type),
        spot_type=str(item.get("Type") or ""),
        status=str(_require(item, "Status", "Code") or ""),
        instance_id=item.get("InstanceId") or None,
    )


class Ec2Adapter:
    """Normalising facade over a boto3 ``ec2`` client."""

    def __init__(self, client: Any, *, my_owner_id: str | None = None) -> None:
        self._client = client
        self._owner_id = my_owner_id

    @property
    def region(self) -> str:
        return str(getattr(getattr(self._client, "meta", None), "region_name", "") or "")

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def list_regions(self) -> list[Region]:
        resp = await call(self._client, "describe_regions", AllRegions=True)
        out: list[Region] = []
        for item in resp.get("Regions", []) or []:
            name = item.get("RegionName")
            if name:
                out.append(Region(name=str(name), opt_in_status=str(item.get("OptInStatus") or "")))
        return out

    async def list_instances(self) -> list[Ec2Instance]:
        reservations = await collect(self._client, "describe_instances", "Reservations")
        out: list[Ec2Instance] = []
        for reservation in reservations:
            for item in reservation.get("Instances", []) or []:
                inst = parse_instance(item)
                if inst is not None:
                    out.append(inst)
        return out

    async def list_reserved(self) -> list[ReservedInstance]:
        resp = await call(self._client, "describe_reserved_instances")
        out: list[ReservedInstance] = []
        for item in resp.get("ReservedInstances", []) or []:
            state = item.get("State")
            reserved_id = item.get("ReservedInstancesId")
            instance_type = item.get("InstanceType")
            if not reserved_id or not instance_type or not state or state == "retired":
                continue
            out.append(
                ReservedInstance(
                    id=str(reserved_id),
                    price=safe_float(item.get("FixedPrice")),
                    instance_type=str(instance_type),
                    state=str(state),
                    availability_zone=item.get("AvailabilityZone") or None,
                )
            )
        return out

    async def list_spot_requests(self) -> list[SpotInstanceRequest]:
        items = await collect(self._client, "describe_spot_instance_requests", "SpotInstanceRequests")
        return [req for req in (parse_spot_request(item) for item in items) if req is not None]

    async def spot_price_history(self, instance_types: Sequence[str] = ()) -> dict[str, float]:
        """Last observed Linux/UNIX spot price per type over the lookback window."""
        params: dict[str, Any] = {
            "Filters": [
                {"Name": "product-description", "Values": ["Linux/UNIX"]},
                {"Name": "availability-zone", "Values": list(SPOT_AVAILABILITY_ZONES)},
            ],
            "StartTime": now_utc() - SPOT_LOOKBACK,
        }
        if instance_types:
            params["InstanceTypes"] = list(instance_types)
        items = await collect(self._client, "describe_spot_price_history", "SpotPriceHistory", params=params)
        prices: dict[str, float] = {}
        for item in items:
            instance_type = item.get("InstanceType")
            price = item.get("SpotPrice")
            if not instance_type or price is None:
                continue
            try:
                prices[str(instance_type)] = float(price)
            except (TypeError, ValueError):
                log.debug("spot_price_unparseable", instance_type=instance_type, price=price)
        return prices

    async def list_amis(self) -> list[Ami]:
        """Images owned by the tenant; empty without an owner id."""
        if not self._owner_id:
            return []
        resp = await call(self._client, "describe_images", Owners=[self._owner_id])
        return self._parse_images(resp.get("Images", []) or [])

    async def latest_ubuntu_ami(self, release: str) -> Ami | None:
        resp = await call(
            self._client,
            "describe_images",
            Owners=[UBUNTU_OWNER_ID],
            Filters=[{"Name": "name", "Values": [f"ubuntu/images/hvm-ssd/ubuntu-{release}-amd64-server*"]}],
        )
        images = sorted(self._parse_images(resp.get("Images", []) or []), key=lambda ami: ami.name)
        return images[-1] if images else None

    @staticmethod
    def _parse_images(items: Iterable[Mapping[str, Any]]) -> list[Ami]:
        out: list[Ami] = []
        for item in items:
            image_id = item.get("ImageId")
            name = item.get("Name")
            state = item.get("State")
            if not image_id or not name or not state:
                continue
            snapshot_ids = tuple(
                str(mapping["Ebs"]["SnapshotId"])
                for mapping in item.get("BlockDeviceMappings", []) or []
                if (mapping.get("Ebs") or {}).get("SnapshotId")
            )
            out.append(Ami(id=str(image_id), name=str(name), state=str(state), snapshot_ids=snapshot_ids))
        return out

    async def get_ami_map(self) -> dict[str, str]:
        return {ami.name: ami.id for ami in await self.list_amis()}

    async def list_key_pairs(self) -> list[KeyPair]:
        resp = await call(self._client, "describe_key_pairs")
        out: list[KeyPair] = []
        for item in resp.get("KeyPairs", []) or []:
            name = item.get("KeyName")
            if name:
                out.append(KeyPair(name=str(name), fingerprint=str(item.get("KeyFingerprint") or "")))
        return out

    async def list_volumes(self) -> list[Volume]:
        items = await collect(self._client, "describe_volumes", "Volumes")
        out: list[Volume] = []
        for item in items:
            volume_id = item.get("VolumeId")
            availability_zone = item.get("AvailabilityZone")
            state = item.get("State")
            if not volume_id or not availability_zone or not state:
                continue
            if item.get("Size") is None or item.get("Iops") is None:
                continue
            out.append(
                Volume(
                    id=str(volume_id),
                    availability_zone=str(availability_zone),
                    size=safe_int(item.get("Size")),
                    iops=safe_int(item.get("Iops")),
                    state=str(state),
                    tags=tag_map(item.get("Tags")),
                )
            )
        return out

    async def list_snapshots(self) -> list[Snapshot]:
        """Snapshots owned by the tenant; empty without an owner id."""
        if not self._owner_id:
            return []
        items = await collect(
            self._client,
            "describe_snapshots",
            "Snapshots",
            params={"Filters": [{"Name": "owner-id", "Values": [self._owner_id]}]},
        )
        out: list[Snapshot] = []
        for item in items:
            snapshot_id = item.get("SnapshotId")
            state = item.get("State")
            if not snapshot_id or not state:
                continue
            out.append(
                Snapshot(
                    id=str(snapshot_id),
                    volume_size=safe_int(item.get("VolumeSize")),
                    state=str(state),
                    progress=str(item.get("Progress") or ""),
                    tags=tag_map(item.get("Tags")),
                )
            )
        return out

    async def list_security_groups(self) -> list[SecurityGroup]:
        items = await collect(self._client, "describe_security_groups", "SecurityGroups")
        out: list[SecurityGroup] = []
        for item in items:
            group_id = item.get("GroupId")
            group_name = item.get("GroupName")
            if not group_id or not group_name:
                continue
            out.append(
                SecurityGroup(
                    group_id=str(group_id),
                    group_name=str(group_name),
                    description=str(item.get("Description") or ""),
                    vpc_id=item.get("VpcId") or None,
                )
            )
        return out

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def terminate(self, instance_ids: Sequence[str]) -> None:
        await call(self._client, "terminate_instances", InstanceIds=list(instance_ids))

    async def request_spot(
        self,
        *,
        image_id: str,
        instance_type: str,
        security_group: str,
        user_data: str,
        key_name: str,
        price: float,
    ) -> list[str]:
        """Submit a one-instance bid; returns the spot request ids."""
        resp = await call(
            self._client,
            "request_spot_instances",
            SpotPrice=str(price),
            InstanceCount=1,
            LaunchSpecification={
                "ImageId": image_id,
                "InstanceType": instance_type,
                "SecurityGroupIds": [security_group],
                "UserData": user_data,
                "KeyName": key_name,
            },
        )
        return [
            str(item["SpotInstanceRequestId"])
            for item in resp.get("SpotInstanceRequests", []) or []
            if item.get("SpotInstanceRequestId")
        ]

    async def cancel_spot(self, request_ids: Sequence[str]) -> None:
        await call(self._client, "cancel_spot_instance_requests", SpotInstanceRequestIds=list(request_ids))

    async def create_tags(self, resource_id: str, tags: Mapping[str, str]) -> None:
        await call(self._client, "create_tags", Resources=[resource_id], Tags=tag_list(tags))

    async def run_instance(
        self,
        *,
        image_id: str,
        instance_type: str,
        security_group: str,
        user_data: str,
        key_name: str,
        tags: Mapping[str, str],
    ) -> list[str]:
        resp = await call(
            self._client,
            "run_instances",
            ImageId=image_id,
            InstanceType=instance_type,
            MinCount=1,
            MaxCount=1,
            KeyName=key_name,
            SecurityGroupIds=[security_group],
            UserData=user_data,
        )
        instance_ids = [
            str(item["InstanceId"]) for item in resp.get("Instances", []) or [] if item.get("InstanceId")
        ]
        if tags:
            for instance_id in instance_ids:
                await self.create_tags(instance_id, tags)
        return instance_ids

    async def create_image(self, instance_id: str, name: str) -> str | None:
        resp = await call(self._client, "create_image", InstanceId=instance_id, Name=name)
        return resp.get("ImageId") or None

    async def deregister_image(self, image_id: str) -> None:
        await call(self._client, "deregister_image", ImageId=image_id)

    async def create_volume(
        self,
        availability_zone: str,
        *,
        size: int | None = None,
        snapshot_id: str | None = None,
    ) -> str | None:
        params: dict[str, Any] = {"AvailabilityZone": availability_zone, "VolumeType": "standard"}
        if size is not None:
            params["Size"] = int(size)
        if snapshot_id:
            params["SnapshotId"] = snapshot_id
        resp = await call(self._client, "create_volume", **params)
        return resp.get("VolumeId") or None

    async def delete_volume(self, volume_id: str) -> None:
        await call(self._client, "delete_volume", VolumeId=volume_id)

    async def attach_volume(self, volume_id: str, instance_id: str, device: str) -> None:
        await call(self._client, "attach_volume", VolumeId=volume_id, InstanceId=instance_id, Device=device)

    async def detach_volume(self, volume_id: str) -> None:
        await call(self._client, "detach_volume", VolumeId=volume_id)

    async def modify_volume(self, volume_id: str, size: int) -> None:
        await call(self._client, "modify_volume", VolumeId=volume_id, Size=int(size))

    async def create_snapshot(self, volume_id: str, tags: Mapping[str, str]) -> str | None:
        params: dict[str, Any] = {"VolumeId": volume_id}
        if tags:
            params["TagSpecifications"] = [{"ResourceType": "snapshot", "Tags": tag_list(tags)}]
        resp = await call(self._client, "create_snapshot", **params)
        return resp.get("SnapshotId") or None

    async def delete_snapshot(self, snapshot_id: str) -> None:
        await call(self._client, "delete_snapshot", SnapshotId=snapshot_id)


__all__ = [
    "SPOT_AVAILABILITY_ZONES",
    "UBUNTU_OWNER_ID",
    "Ec2Adapter",
    "parse_instance",
    "parse_spot_request",
]
