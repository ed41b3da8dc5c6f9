"""Route53 adapter: hosted zones, A records and the DNS update flow."""

from __future__ import annotations

from typing import Any

from contracts.resources import DnsRecord, HostedZone
from infra.logging_config import StructuredLogger
from services.aws._common import call, collect, safe_int

log = StructuredLogger(__name__)


class Route53Adapter:
    def __init__(self, client: Any) -> None:
        self._client = client

    async def list_hosted_zones(self) -> list[HostedZone]:
        items = await collect(
            self._client,
            "list_hosted_zones",
            "HostedZones",
            request_token_key="Marker",
            response_token_keys=("NextMarker",),
        )
        return [
            HostedZone(
                id=str(item["Id"]),
                name=str(item["Name"]),
                record_count=safe_int(item.get("ResourceRecordSetCount")),
            )
            for item in items
            if item.get("Id") and item.get("Name")
        ]

    async def list_record_sets(self, zone_id: str) -> list[dict[str, Any]]:
        return await collect(
            self._client,
            "list_resource_record_sets",
            "ResourceRecordSets",
            params={"HostedZoneId": zone_id},
        )

    async def list_a_records(self, zone_id: str) -> list[DnsRecord]:
        """A records of one zone; ``ip`` is the first value of each set."""
        out: list[DnsRecord] = []
        for record in await self.list_record_sets(zone_id):
            if record.get("Type") != "A":
                continue
            values = [r.get("Value") for r in record.get("ResourceRecords", []) or [] if r.get("Value")]
            if not values or not record.get("Name"):
                continue
            out.append(DnsRecord(zone_id=zone_id, name=str(record["Name"]), ip=str(values[0])))
        return out

    async def list_all_dns_records(self) -> list[DnsRecord]:
        out: list[DnsRecord] = []
        for zone in await self.list_hosted_zones():
            out.extend(await self.list_a_records(zone.id))
        return out

    async def update_dns_name(self, zone_id: str, dns_name: str, old_ip: str, new_ip: str) -> bool:
        """Point the A record currently at ``old_ip`` to ``new_ip``.

        Returns False when nothing changed: identical addresses, or no A
        record named ``dns_name`` whose first value is ``old_ip``.
        """
        if old_ip == new_ip:
            return False
        target: dict[str, Any] | None = None
        for record in await self.list_record_sets(zone_id):
            if record.get("Type") != "A" or record.get("Name") != dns_name:
                continue
            values = record.get("ResourceRecords", []) or []
            if values and values[0].get("Value") == old_ip:
                target = record
                break
        if target is None:
            log.info("dns_record_not_found", zone=zone_id, record=dns_name, old_ip=old_ip)
            return False

        record_set: dict[str, Any] = {
            "Name": dns_name,
            "Type": "A",
            "ResourceRecords": [{"Value": new_ip}],
        }
        if target.get("TTL") is not None:
            record_set["TTL"] = target["TTL"]
        await call(
            self._client,
            "change_resource_record_sets",
            HostedZoneId=zone_id,
            ChangeBatch={
                "Comment": f"change ip of {dns_name} from {old_ip} to {new_ip}",
                "Changes": [{"Action": "UPSERT", "ResourceRecordSet": record_set}],
            },
        )
        return True


__all__ = ["Route53Adapter"]
