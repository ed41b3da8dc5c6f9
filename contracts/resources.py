"""Normalised cloud resource views.

These are transient: every listing builds fresh instances from SDK
responses and nothing here is persisted. Datetimes are timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

RUNNING = "running"


@dataclass(frozen=True)
class Ec2Instance:
    """Compute instance as seen by the console."""

    id: str
    dns_name: str
    state: str
    instance_type: str
    availability_zone: str
    launch_time: datetime
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.state == RUNNING

    @property
    def name(self) -> str | None:
        return self.tags.get("Name")


@dataclass(frozen=True)
class ReservedInstance:
    id: str
    price: float
    instance_type: str
    state: str
    availability_zone: str | None = None


@dataclass(frozen=True)
class SpotInstanceRequest:
    """Spot bid; ``price`` is 0.0 when the provider value is not numeric."""

    id: str
    price: float
    imageid: str
    instance_type: str
    spot_type: str
    status: str
    instance_id: str | None = None


@dataclass(frozen=True)
class Ami:
    id: str
    name: str
    state: str
    snapshot_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Volume:
    id: str
    availability_zone: str
    size: int
    iops: int
    state: str
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str | None:
        return self.tags.get("Name")


@dataclass(frozen=True)
class Snapshot:
    id: str
    volume_size: int
    state: str
    progress: str
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str | None:
        return self.tags.get("Name")


@dataclass(frozen=True)
class EcrImage:
    """Container image; ``image_size`` is in MB (bytes / 1e6)."""

    repository: str
    digest: str
    tags: tuple[str, ...]
    pushed_at: datetime
    image_size: float


@dataclass(frozen=True)
class KeyPair:
    name: str
    fingerprint: str


@dataclass(frozen=True)
class SecurityGroup:
    group_id: str
    group_name: str
    description: str = ""
    vpc_id: str | None = None


@dataclass(frozen=True)
class IamUser:
    arn: str
    create_date: datetime
    user_id: str
    user_name: str
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class IamGroup:
    arn: str
    create_date: datetime
    group_id: str
    group_name: str


@dataclass(frozen=True)
class AccessKeyMeta:
    """Existing access key; the secret is never available after creation."""

    access_key_id: str
    user_name: str
    status: str
    create_date: datetime


@dataclass(frozen=True)
class NewAccessKey:
    """Freshly created access key; the only place the secret is exposed."""

    access_key_id: str
    user_name: str
    status: str
    create_date: datetime
    secret_access_key: str = field(repr=False)


@dataclass(frozen=True)
class IamUserDetail:
    """User with its group names and access keys."""

    user: IamUser
    groups: tuple[str, ...] = ()
    access_keys: tuple[AccessKeyMeta, ...] = ()


@dataclass(frozen=True)
class HostedZone:
    id: str
    name: str
    record_count: int = 0


@dataclass(frozen=True)
class DnsRecord:
    """A-record only: ``ip`` is the first value of the record set."""

    zone_id: str
    name: str
    ip: str


@dataclass(frozen=True)
class S3Object:
    key: str
    size: int = 0
    etag: str = ""
    last_modified: datetime | None = None


@dataclass(frozen=True)
class Region:
    name: str
    opt_in_status: str


def as_dict(obj: Any) -> dict[str, Any]:
    """Shallow ``dataclasses.asdict`` that keeps datetimes as objects."""
    return {name: getattr(obj, name) for name in obj.__dataclass_fields__}


__all__ = [
    "RUNNING",
    "AccessKeyMeta",
    "Ami",
    "DnsRecord",
    "Ec2Instance",
    "EcrImage",
    "HostedZone",
    "IamGroup",
    "IamUser",
    "IamUserDetail",
    "KeyPair",
    "NewAccessKey",
    "Region",
    "ReservedInstance",
    "S3Object",
    "SecurityGroup",
    "Snapshot",
    "SpotInstanceRequest",
    "Volume",
    "as_dict",
]
