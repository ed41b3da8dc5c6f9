"""Catalog rows: instance taxonomy, pricing observations, mail index, DMARC.

Closed value sets (generation, price type) are plain strings validated
against module constants so rows map one-to-one onto table columns.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime

GENERATION_HVM = "hvm"
GENERATION_PV = "pv"
GENERATIONS = frozenset({GENERATION_HVM, GENERATION_PV})

PRICE_ONDEMAND = "ondemand"
PRICE_RESERVED = "reserved"
PRICE_SPOT = "spot"
PRICE_TYPES = frozenset({PRICE_ONDEMAND, PRICE_RESERVED, PRICE_SPOT})

# Display label -> accepted spellings on vendor pages.
FAMILY_LABELS: dict[str, tuple[str, ...]] = {
    "Storage Optimized": ("Storage Optimized", "Storage optimized"),
    "Accelerated Computing": ("Accelerated Computing",),
    "Memory Optimized": ("Memory Optimized", "Memory optimized"),
    "Compute Optimized": ("Compute Optimized", "Compute optimized"),
    "General Purpose": ("General Purpose", "General purpose"),
    "Micro": ("Micro",),
    "GPU Optimized": ("GPU Optimized", "GPU optimized"),
}

_LABEL_LOOKUP = {spelling: label for label, spellings in FAMILY_LABELS.items() for spelling in spellings}


def family_label(family_type: str) -> str | None:
    """Canonical family label for a scraped ``family_type`` (None if unknown)."""
    return _LABEL_LOOKUP.get(str(family_type or "").strip())


def family_of(instance_type: str) -> str:
    """``m5.large`` -> ``m5``."""
    return str(instance_type).split(".", 1)[0]


@dataclass(frozen=True)
class InstanceFamily:
    family_name: str
    family_type: str
    data_url: str | None = None
    use_for_spot: bool = False


@dataclass(frozen=True)
class InstanceListRow:
    instance_type: str
    family_name: str
    n_cpu: int
    memory_gib: float
    generation: str

    def __post_init__(self) -> None:
        if self.generation not in GENERATIONS:
            raise ValueError(f"invalid generation: {self.generation!r}")


@dataclass(frozen=True)
class InstancePricing:
    """One price observation; unique per ``(instance_type, price_type)``."""

    instance_type: str
    price: float
    price_type: str
    price_timestamp: datetime
    id: int | None = None

    def __post_init__(self) -> None:
        if self.price_type not in PRICE_TYPES:
            raise ValueError(f"invalid price_type: {self.price_type!r}")

    @property
    def key(self) -> tuple[str, str]:
        return (self.instance_type, self.price_type)


@dataclass(frozen=True)
class Ec2Price:
    """Joined row returned by the price view."""

    instance_type: str
    ncpu: int
    memory: float
    instance_family: str
    ondemand_price: float | None = None
    spot_price: float | None = None
    reserved_price: float | None = None
    data_url: str | None = None


@dataclass(frozen=True)
class AuthorizedUser:
    email: str
    telegram_userid: int | None = None
    created_at: datetime | None = None
    deleted_at: datetime | None = None


@dataclass(frozen=True)
class InboundEmail:
    s3_bucket: str
    s3_key: str
    from_address: str
    to_address: str
    subject: str
    date: datetime
    text_content: str
    html_content: str
    raw_email: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass(frozen=True)
class DmarcRecord:
    """One authentication result row from an aggregate report."""

    s3_key: str | None = None
    org_name: str | None = None
    email: str | None = None
    report_id: str | None = None
    date_range_begin: int | None = None
    date_range_end: int | None = None
    policy_domain: str | None = None
    source_ip: str | None = None
    count: int | None = None
    auth_result_type: str | None = None
    auth_result_domain: str | None = None
    auth_result_result: str | None = None
    created_at: datetime | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)


__all__ = [
    "FAMILY_LABELS",
    "GENERATIONS",
    "GENERATION_HVM",
    "GENERATION_PV",
    "PRICE_ONDEMAND",
    "PRICE_RESERVED",
    "PRICE_SPOT",
    "PRICE_TYPES",
    "AuthorizedUser",
    "DmarcRecord",
    "Ec2Price",
    "InboundEmail",
    "InstanceFamily",
    "InstanceListRow",
    "InstancePricing",
    "family_label",
    "family_of",
]
