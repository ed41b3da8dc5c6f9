"""
services/orchestrator.py

Resource orchestrator: operator-level actions over the Cloud Adapter.

Responsibilities
----------------
- Keep the cached instance listing fresh (``fill_instance_list``) and build
  alias maps from it before every alias-aware action.
- Fan out per-kind listings in parallel (``list``), instances always first.
- Resolve Name tags (instances, AMIs, volumes, snapshots) to ids before
  mutating anything.
- Launch on-demand and spot instances; spot launches hand their tags to a
  background propagation task that ``aclose`` cancels.
- Join the catalog with live spot prices for the price view.

Every adapter call goes through ``exponential_retry``. SSH-backed reads are
bounded by ``SSH_TIMEOUT_SECONDS`` and raise ``OperationTimeout``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any, Optional, TypeVar

from contracts.catalog import Ec2Price, family_of
from contracts.errors import BadRequest, ConfigError, OperationTimeout
from contracts.requests import InstanceRequest, SpotRequest
from contracts.resource_kind import ResourceKind, expand_kinds
from contracts.resources import Ami, DnsRecord, Ec2Instance, IamUserDetail, NewAccessKey, Region
from infra.config import ConsoleConfig
from infra.logging_config import StructuredLogger
from services.alias import AliasResolver, map_or_val, name_tag_map
from services.aws.clients import AwsAdapters
from services.aws.iam import MAX_ACCESS_KEYS_PER_USER
from services.catalog_scraper import CatalogScraper
from services.instance_cache import InstanceCache
from services.pricing_scraper import PricingScraper
from services.retry import exponential_retry
from services.spot_sampler import SpotSampler
from services.ssh import SSH_TIMEOUT_SECONDS, SshRunner
from services.tag_propagation import POLL_ATTEMPTS, POLL_INTERVAL_SECONDS, propagate_spot_tags
from services.user_data import encode_user_data, get_user_data_from_script, list_scripts

log = StructuredLogger(__name__)

T = TypeVar("T")

STATUS_COMMAND = "tail /var/log/cloud-init-output.log"


def _split_search(search: Iterable[str] | str | None) -> list[str]:
    if search is None:
        return []
    items = [search] if isinstance(search, str) else list(search)
    return [term.strip() for item in items for term in str(item).split(",") if term.strip()]


class Orchestrator:
    """Operator actions bound to one region's adapters."""

    def __init__(
        self,
        aws: AwsAdapters,
        *,
        console: ConsoleConfig,
        store: Any = None,
        cache: Optional[InstanceCache] = None,
        ssh: Optional[SshRunner] = None,
        systemd: Any = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tag_attempts: int = POLL_ATTEMPTS,
        tag_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.aws = aws
        self.console = console
        self.store = store
        self.cache = cache if cache is not None else InstanceCache()
        self.ssh = ssh if ssh is not None else SshRunner(console.ssh_user)
        self.systemd = systemd
        self.spot = SpotSampler(aws.ec2, store)
        self._sleep = sleep
        self._tag_attempts = tag_attempts
        self._tag_interval = tag_interval
        self._tasks: set[asyncio.Task] = set()

    async def _retry(self, name: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        return await exponential_retry(lambda: fn(*args, **kwargs), name=name, sleep=self._sleep)

    # ------------------------------------------------------------------
    # Instance cache / aliases
    # ------------------------------------------------------------------

    async def fill_instance_list(self) -> tuple[Ec2Instance, ...]:
        return await self.cache.refresh(lambda: self._retry("DescribeInstances", self.aws.ec2.list_instances))

    async def resolver(self) -> AliasResolver:
        return AliasResolver(await self.fill_instance_list())

    async def _volume_map(self) -> dict[str, str]:
        volumes = await self._retry("DescribeVolumes", self.aws.ec2.list_volumes)
        return name_tag_map((v.name, v.id) for v in volumes)

    async def _snapshot_map(self) -> dict[str, str]:
        snapshots = await self._retry("DescribeSnapshots", self.aws.ec2.list_snapshots)
        return name_tag_map((s.name, s.id) for s in snapshots)

    async def _ami_map(self) -> dict[str, str]:
        return await self._retry("DescribeImages", self.aws.ec2.get_ami_map)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def get_all_ami_tags(self) -> list[Ami]:
        """Tenant AMIs plus the newest Ubuntu image of the configured release."""
        async with asyncio.TaskGroup() as tg:
            mine = tg.create_task(self._retry("DescribeImages", self.aws.ec2.list_amis))
            ubuntu = tg.create_task(
                self._retry("DescribeImages", self.aws.ec2.latest_ubuntu_ami, self.console.ubuntu_release)
            )
        amis = list(mine.result())
        if not amis:
            return []
        latest = ubuntu.result()
        if latest is not None:
            amis.append(latest)
        return amis

    async def list_users(self) -> list[IamUserDetail]:
        users = await self._retry("ListUsers", self.aws.iam.list_users)

        async def _detail(user) -> IamUserDetail:
            async with asyncio.TaskGroup() as tg:
                iam = self.aws.iam
                groups = tg.create_task(self._retry("ListGroupsForUser", iam.list_groups_for_user, user.user_name))
                keys = tg.create_task(self._retry("ListAccessKeys", iam.list_access_keys, user.user_name))
            return IamUserDetail(
                user=user,
                groups=tuple(g.group_name for g in groups.result()),
                access_keys=tuple(keys.result()),
            )

        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(_detail(user)) for user in users]
        return [t.result() for t in tasks]

    async def list_access_keys(self) -> list:
        users = await self._retry("ListUsers", self.aws.iam.list_users)
        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(self._retry("ListAccessKeys", self.aws.iam.list_access_keys, u.user_name)) for u in users
            ]
        return [key for t in tasks for key in t.result()]

    async def list_ecr_images(self) -> list:
        repos = await self._retry("DescribeRepositories", self.aws.ecr.list_repositories)
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(self._retry("DescribeImages", self.aws.ecr.list_images, r)) for r in repos]
        return [image for t in tasks for image in t.result()]

    async def list_dns_records(self) -> list[DnsRecord]:
        return await self._retry("ListResourceRecordSets", self.aws.route53.list_all_dns_records)

    async def process_resource(self, kind: ResourceKind) -> list[Any]:
        """One listing per kind; the shapes differ by kind."""
        ec2 = self.aws.ec2
        match kind:
            case ResourceKind.INSTANCES:
                return list(await self.fill_instance_list())
            case ResourceKind.RESERVED:
                return await self._retry("DescribeReservedInstances", ec2.list_reserved)
            case ResourceKind.SPOT:
                return await self._retry("DescribeSpotInstanceRequests", ec2.list_spot_requests)
            case ResourceKind.AMI:
                return await self.get_all_ami_tags()
            case ResourceKind.VOLUME:
                return await self._retry("DescribeVolumes", ec2.list_volumes)
            case ResourceKind.SNAPSHOT:
                return await self._retry("DescribeSnapshots", ec2.list_snapshots)
            case ResourceKind.ECR:
                return await self.list_ecr_images()
            case ResourceKind.KEY:
                return await self._retry("DescribeKeyPairs", ec2.list_key_pairs)
            case ResourceKind.SCRIPT:
                return await asyncio.to_thread(list_scripts, self.console.script_directory)
            case ResourceKind.USER:
                return await self.list_users()
            case ResourceKind.GROUP:
                return await self._retry("ListGroups", self.aws.iam.list_groups)
            case ResourceKind.ACCESS_KEY:
                return await self.list_access_keys()
            case ResourceKind.ROUTE53:
                return await self.list_dns_records()
            case ResourceKind.SYSTEMD:
                if self.systemd is None:
                    return []
                return sorted((await self.systemd.list_running_services()).items())
            case ResourceKind.INBOUND_EMAIL:
                if self.store is None:
                    return []
                return await self.store.list_emails()
            case ResourceKind.SECURITY_GROUP:
                return await self._retry("DescribeSecurityGroups", ec2.list_security_groups)
            case ResourceKind.ALL:
                raise ValueError("ALL must be expanded before dispatch")
        raise ValueError(f"unhandled resource kind {kind!r}")

    async def list(self, kinds: Iterable[ResourceKind]) -> dict[ResourceKind, list[Any]]:
        """Listings keyed by kind, in request order with instances first."""
        ordered = expand_kinds(kinds)
        async with asyncio.TaskGroup() as tg:
            tasks = {kind: tg.create_task(self.process_resource(kind)) for kind in ordered}
        return {kind: tasks[kind].result() for kind in ordered}

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    async def terminate(self, instance_ids: Sequence[str]) -> list[str]:
        resolver = await self.resolver()
        ids = resolver.resolve_all(instance_ids)
        await self._retry("TerminateInstances", self.aws.ec2.terminate, ids)
        log.info("instances_terminated", instance_ids=ids)
        return ids

    async def connect(self, instance: str) -> Optional[str]:
        """``ssh user@host`` for a running instance, None when unknown."""
        host = (await self.resolver()).host_for(instance)
        return f"ssh {self.ssh.user}@{host}" if host else None

    async def create_image(self, instance: str, name: str) -> Optional[str]:
        instance_id = (await self.resolver()).resolve(instance)
        return await self._retry("CreateImage", self.aws.ec2.create_image, instance_id, name)

    async def delete_image(self, ami: str) -> str:
        image_id = map_or_val(await self._ami_map(), ami)
        await self._retry("DeregisterImage", self.aws.ec2.deregister_image, image_id)
        return image_id

    async def tag_item(self, item: str, tags: Mapping[str, str]) -> str:
        """Tag an instance, volume or snapshot given its id or Name tag."""
        resolver = await self.resolver()
        resource_id = resolver.resolve(item)
        if resource_id == item:
            resource_id = map_or_val(await self._volume_map(), item)
        if resource_id == item:
            resource_id = map_or_val(await self._snapshot_map(), item)
        await self._retry("CreateTags", self.aws.ec2.create_tags, resource_id, dict(tags))
        return resource_id

    def _user_data(self, script: str) -> str:
        return encode_user_data(get_user_data_from_script(self.console.script_directory, script))

    async def request_spot(self, request: SpotRequest) -> list[str]:
        """Submit a spot bid; tags follow once the instance exists."""
        req = request.with_defaults(self.console)
        image_id = map_or_val(await self._ami_map(), req.ami)
        user_data = await asyncio.to_thread(self._user_data, req.script)
        request_ids = await self._retry(
            "RequestSpotInstances",
            self.aws.ec2.request_spot,
            image_id=image_id,
            instance_type=req.instance_type,
            security_group=req.security_group,
            user_data=user_data,
            key_name=req.key_name,
            price=req.price,
        )
        log.info("spot_requested", request_ids=request_ids, instance_type=req.instance_type, price=req.price)
        if request_ids and req.tags:
            self._spawn(
                propagate_spot_tags(
                    request_ids,
                    dict(req.tags),
                    list_spot_requests=self.aws.ec2.list_spot_requests,
                    create_tags=self.aws.ec2.create_tags,
                    attempts=self._tag_attempts,
                    interval=self._tag_interval,
                    sleep=self._sleep,
                )
            )
        return request_ids

    async def run_instance(self, request: InstanceRequest) -> list[str]:
        req = request.with_defaults(self.console)
        image_id = map_or_val(await self._ami_map(), req.ami)
        user_data = await asyncio.to_thread(self._user_data, req.script)
        instance_ids = await self._retry(
            "RunInstances",
            self.aws.ec2.run_instance,
            image_id=image_id,
            instance_type=req.instance_type,
            security_group=req.security_group,
            user_data=user_data,
            key_name=req.key_name,
            tags=dict(req.tags),
        )
        log.info("instances_launched", instance_ids=instance_ids, instance_type=req.instance_type)
        return instance_ids

    async def cancel_spot(self, request_ids: Sequence[str]) -> None:
        await self._retry("CancelSpotInstanceRequests", self.aws.ec2.cancel_spot, list(request_ids))

    async def _over_ssh(self, operation: str, instance: str, command: str) -> list[str]:
        resolver = await self.resolver()
        host = resolver.host_for(instance)
        if host is None:
            return []
        try:
            return await asyncio.wait_for(self.ssh.run_command(host, command), timeout=SSH_TIMEOUT_SECONDS)
        except TimeoutError as exc:
            raise OperationTimeout(operation, SSH_TIMEOUT_SECONDS) from exc

    async def get_status(self, instance: str) -> list[str]:
        """Tail of the cloud-init log on a running instance."""
        return await self._over_ssh("get_status", instance, STATUS_COMMAND)

    async def command(self, instance: str, command: str) -> list[str]:
        return await self._over_ssh("command", instance, command)

    # ------------------------------------------------------------------
    # Volumes / snapshots
    # ------------------------------------------------------------------

    async def create_volume(
        self,
        availability_zone: str,
        *,
        size: Optional[int] = None,
        snapshot: Optional[str] = None,
    ) -> Optional[str]:
        snapshot_id = map_or_val(await self._snapshot_map(), snapshot) if snapshot else None
        return await self._retry(
            "CreateVolume", self.aws.ec2.create_volume, availability_zone, size=size, snapshot_id=snapshot_id
        )

    async def delete_volume(self, volume: str) -> str:
        volume_id = map_or_val(await self._volume_map(), volume)
        await self._retry("DeleteVolume", self.aws.ec2.delete_volume, volume_id)
        return volume_id

    async def modify_volume(self, volume: str, size: int) -> str:
        volume_id = map_or_val(await self._volume_map(), volume)
        await self._retry("ModifyVolume", self.aws.ec2.modify_volume, volume_id, size)
        return volume_id

    async def attach_volume(self, volume: str, instance: str, device: str) -> tuple[str, str]:
        volume_id = map_or_val(await self._volume_map(), volume)
        instance_id = (await self.resolver()).resolve(instance)
        await self._retry("AttachVolume", self.aws.ec2.attach_volume, volume_id, instance_id, device)
        return volume_id, instance_id

    async def detach_volume(self, volume: str) -> str:
        volume_id = map_or_val(await self._volume_map(), volume)
        await self._retry("DetachVolume", self.aws.ec2.detach_volume, volume_id)
        return volume_id

    async def create_snapshot(self, volume: str, tags: Mapping[str, str]) -> Optional[str]:
        volume_id = map_or_val(await self._volume_map(), volume)
        return await self._retry("CreateSnapshot", self.aws.ec2.create_snapshot, volume_id, dict(tags))

    async def delete_snapshot(self, snapshot: str) -> str:
        snapshot_id = map_or_val(await self._snapshot_map(), snapshot)
        await self._retry("DeleteSnapshot", self.aws.ec2.delete_snapshot, snapshot_id)
        return snapshot_id

    # ------------------------------------------------------------------
    # ECR
    # ------------------------------------------------------------------

    async def delete_ecr_images(self, repository: str, digests: Sequence[str]) -> None:
        await self._retry("BatchDeleteImage", self.aws.ecr.delete_images, repository, list(digests))

    async def cleanup_ecr_images(self) -> int:
        return await self._retry("BatchDeleteImage", self.aws.ecr.cleanup_images)

    # ------------------------------------------------------------------
    # IAM
    # ------------------------------------------------------------------

    async def create_user(self, user_name: str):
        return await self._retry("CreateUser", self.aws.iam.create_user, user_name)

    async def delete_user(self, user_name: str) -> None:
        await self._retry("DeleteUser", self.aws.iam.delete_user, user_name)

    async def add_user_to_group(self, user_name: str, group_name: str) -> None:
        await self._retry("AddUserToGroup", self.aws.iam.add_user_to_group, user_name, group_name)

    async def remove_user_from_group(self, user_name: str, group_name: str) -> None:
        await self._retry("RemoveUserFromGroup", self.aws.iam.remove_user_from_group, user_name, group_name)

    async def create_access_key(self, user_name: str) -> NewAccessKey:
        existing = await self._retry("ListAccessKeys", self.aws.iam.list_access_keys, user_name)
        if len(existing) >= MAX_ACCESS_KEYS_PER_USER:
            raise BadRequest(f"{user_name} already has {len(existing)} access keys")
        return await self._retry("CreateAccessKey", self.aws.iam.create_access_key, user_name)

    async def delete_access_key(self, user_name: str, access_key_id: str) -> None:
        await self._retry("DeleteAccessKey", self.aws.iam.delete_access_key, user_name, access_key_id)

    # ------------------------------------------------------------------
    # DNS
    # ------------------------------------------------------------------

    async def update_dns_name(self, zone_id: str, dns_name: str, old_ip: str, new_ip: str) -> bool:
        changed = await self._retry(
            "ChangeResourceRecordSets", self.aws.route53.update_dns_name, zone_id, dns_name, old_ip, new_ip
        )
        log.info("dns_update", zone_id=zone_id, dns_name=dns_name, old_ip=old_ip, new_ip=new_ip, changed=changed)
        return changed

    # ------------------------------------------------------------------
    # Regions / buckets
    # ------------------------------------------------------------------

    async def list_regions(self) -> list[Region]:
        return await self._retry("DescribeRegions", self.aws.ec2.list_regions)

    async def list_buckets(self) -> list[str]:
        return await self._retry("ListBuckets", self.aws.s3.list_buckets)

    async def create_bucket(self, bucket: str) -> str:
        location = await self._retry("CreateBucket", self.aws.s3.create_bucket, bucket)
        log.info("bucket_created", bucket=bucket, location=location)
        return location

    async def delete_bucket(self, bucket: str) -> None:
        await self._retry("DeleteBucket", self.aws.s3.delete_bucket, bucket)
        log.info("bucket_deleted", bucket=bucket)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def _require_store(self):
        if self.store is None:
            raise ConfigError("catalog store is not configured")
        return self.store

    async def get_ec2_prices(self, search: Iterable[str] | str | None = None) -> list[Ec2Price]:
        """Catalog prices joined with live spot prices, sorted by (cpu, memory)."""
        store = self._require_store()
        terms = _split_search(search)
        rows = [
            row
            for row in await store.price_view()
            if not terms or any(term in row["instance_type"] for term in terms)
        ]
        if not rows:
            return []
        spot = await self._retry("DescribeSpotPriceHistory", self.spot.sample, [r["instance_type"] for r in rows])
        prices = [
            Ec2Price(
                instance_type=row["instance_type"],
                ncpu=row["ncpu"],
                memory=row["memory"],
                instance_family=row["instance_family"] or family_of(row["instance_type"]),
                ondemand_price=row["ondemand_price"],
                spot_price=spot.get(row["instance_type"]),
                reserved_price=row["reserved_price"],
                data_url=row["data_url"],
            )
            for row in rows
        ]
        prices.sort(key=lambda p: (p.ncpu, p.memory, p.instance_type))
        return prices

    async def update(self) -> dict[str, Any]:
        """Scrape HVM and PV catalogs, then refresh prices."""
        store = self._require_store()
        catalog = await CatalogScraper(store).update()
        written = await PricingScraper(store, self.aws.pricing).update_all_prices()
        return {"catalog": catalog, "prices": written}

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("background_task_failed", error=str(exc))

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def aclose(self) -> None:
        """Cancel outstanding tag-propagation tasks."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["STATUS_COMMAND", "Orchestrator"]
