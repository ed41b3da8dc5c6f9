"""Name-tag alias resolution over the cached instance list.

Only running instances are visible. When two running instances share a
``Name`` tag the later one in the listing wins.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from contracts.resources import Ec2Instance


def map_or_val(mapping: Mapping[str, str], value: str) -> str:
    """``mapping[value]`` when present, else ``value`` unchanged (raw ids pass through)."""
    return mapping.get(value, value)


def get_name_map(instances: Iterable[Ec2Instance]) -> dict[str, str]:
    """Name tag -> instance id over running instances."""
    out: dict[str, str] = {}
    for inst in instances:
        if not inst.is_running:
            continue
        name = inst.name
        if name:
            out[name] = inst.id
    return out


def get_id_host_map(instances: Iterable[Ec2Instance]) -> dict[str, str]:
    """Instance id -> public DNS name over running instances."""
    return {inst.id: inst.dns_name for inst in instances if inst.is_running}


def name_tag_map(items: Iterable[tuple[str | None, str]]) -> dict[str, str]:
    """Build a Name -> id map from ``(name, id)`` pairs, skipping unnamed entries."""
    return {name: item_id for name, item_id in items if name}


class AliasResolver:
    """Both alias maps built from one instance snapshot."""

    def __init__(self, instances: Iterable[Ec2Instance]) -> None:
        snapshot = tuple(instances)
        self.name_map = get_name_map(snapshot)
        self.host_map = get_id_host_map(snapshot)

    def resolve(self, value: str) -> str:
        return map_or_val(self.name_map, value)

    def resolve_all(self, values: Iterable[str]) -> list[str]:
        return [self.resolve(v) for v in values]

    def host_for(self, value: str) -> str | None:
        """Public DNS of a running instance given its name or id."""
        return self.host_map.get(self.resolve(value))


__all__ = ["AliasResolver", "get_id_host_map", "get_name_map", "map_or_val", "name_tag_map"]
