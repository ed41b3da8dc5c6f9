"""Resource kinds accepted by ``list`` and the ``/aws/list`` route."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

from contracts.errors import BadRequest


class ResourceKind(Enum):
    INSTANCES = "instances"
    RESERVED = "reserved"
    SPOT = "spot"
    AMI = "ami"
    VOLUME = "volume"
    SNAPSHOT = "snapshot"
    ECR = "ecr"
    KEY = "key"
    SCRIPT = "script"
    USER = "user"
    GROUP = "group"
    ACCESS_KEY = "access-key"
    ROUTE53 = "route53"
    SYSTEMD = "systemd"
    INBOUND_EMAIL = "inbound-email"
    SECURITY_GROUP = "security-group"
    ALL = "all"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> ResourceKind:
        """Parse a wire value (case-insensitive, a few legacy aliases)."""
        key = str(text or "").strip().lower()
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError as exc:
            raise BadRequest(f"unknown resource kind: {text!r}") from exc


_ALIASES = {
    "instance": "instances",
    "access_key": "access-key",
    "dns": "route53",
    "inbound_email": "inbound-email",
    "security_group": "security-group",
}

CONCRETE_KINDS: tuple[ResourceKind, ...] = tuple(k for k in ResourceKind if k is not ResourceKind.ALL)


def expand_kinds(kinds: Iterable[ResourceKind]) -> list[ResourceKind]:
    """Instances first, ``all`` expanded, duplicates removed keeping first-seen order."""
    ordered: list[ResourceKind] = [ResourceKind.INSTANCES]
    for kind in kinds:
        if kind is ResourceKind.ALL:
            ordered.extend(CONCRETE_KINDS)
        else:
            ordered.append(kind)
    seen: set[ResourceKind] = set()
    out: list[ResourceKind] = []
    for kind in ordered:
        if kind not in seen:
            seen.add(kind)
            out.append(kind)
    return out


__all__ = ["CONCRETE_KINDS", "ResourceKind", "expand_kinds"]
