"""
services/aws/pricing.py

AWS Pricing adapter
===================

Resolves OnDemand and 1-year All Upfront Reserved EC2 prices per instance
type from Pricing:GetProducts.

Notes:
- The Pricing API is served from us-east-1; filters use the "location"
  label ("US East (N. Virginia)"), not the region code.
- Reserved upfront amounts are annual; they are normalised to an hourly rate
  by dividing by 365 * 24.
- Every request takes a token from the shared limiter first.

Minimal IAM permission:
- pricing:GetProducts, pricing:DescribeServices, pricing:GetAttributeValues
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dateutil import parser as date_parser

from contracts.catalog import PRICE_ONDEMAND, PRICE_RESERVED, InstancePricing
from contracts.errors import ParseError
from services.aws._common import call, utc
from services.rate_limiter import AsyncTokenBucket, pricing_rate_limiter

PRICING_LOCATION = "US East (N. Virginia)"
HOURS_PER_YEAR = 365.0 * 24.0

PriceKey = Tuple[str, str]


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _effective_date(term: Mapping[str, Any]) -> Optional[datetime]:
    raw = term.get("effectiveDate")
    if not raw:
        return None
    try:
        return utc(date_parser.isoparse(str(raw)))
    except ValueError:
        return None


@dataclass(frozen=True)
class AwsService:
    service_code: str
    attributes: Tuple[str, ...]


def ec2_price_filters(instance_type: str) -> List[Dict[str, str]]:
    """GetProducts filter set for Linux instances in us-east-1."""
    fields = (
        ("operatingSystem", "Linux"),
        ("instanceType", instance_type),
        ("location", PRICING_LOCATION),
        ("OfferingClass", "standard"),
        ("locationType", "AWS Region"),
    )
    return [{"Type": "TERM_MATCH", "Field": f, "Value": v} for f, v in fields]


def _keep_newest(entries: Dict[PriceKey, InstancePricing], candidate: InstancePricing) -> None:
    current = entries.get(candidate.key)
    if current is not None and current.price_timestamp > candidate.price_timestamp:
        return
    entries[candidate.key] = candidate


def parse_price_item(
    item: Any,
    *,
    instance_type: str,
    entries: Optional[Dict[PriceKey, InstancePricing]] = None,
) -> Dict[PriceKey, InstancePricing]:
    """
    Fold one PriceList entry (JSON string or dict) into ``entries``.

    OnDemand: dimensions with unit "Hrs". Reserved: terms with
    LeaseContractLength "1yr" and PurchaseOption "All Upfront", dimensions
    with unit "Quantity", zero prices skipped. Per (type, price_type) the
    observation with the newest effectiveDate wins.
    """
    entries = {} if entries is None else entries
    if isinstance(item, str):
        try:
            data = json.loads(item)
        except json.JSONDecodeError as exc:
            raise ParseError(f"invalid pricing document for {instance_type}: {exc}") from exc
    elif isinstance(item, dict):
        data = item
    else:
        return entries

    terms = data.get("terms", {})
    if not isinstance(terms, dict):
        return entries

    for term in (terms.get("OnDemand") or {}).values():
        if not isinstance(term, dict):
            continue
        effective = _effective_date(term)
        if effective is None:
            continue
        for dim in (term.get("priceDimensions") or {}).values():
            if not isinstance(dim, dict) or str(dim.get("unit") or "") != "Hrs":
                continue
            usd = _safe_float((dim.get("pricePerUnit") or {}).get("USD"))
            if usd is None:
                continue
            _keep_newest(
                entries,
                InstancePricing(
                    instance_type=instance_type,
                    price=usd,
                    price_type=PRICE_ONDEMAND,
                    price_timestamp=effective,
                ),
            )

    for term in (terms.get("Reserved") or {}).values():
        if not isinstance(term, dict):
            continue
        attrs = term.get("termAttributes") or {}
        if attrs.get("LeaseContractLength") != "1yr" or attrs.get("PurchaseOption") != "All Upfront":
            continue
        effective = _effective_date(term)
        if effective is None:
            continue
        for dim in (term.get("priceDimensions") or {}).values():
            if not isinstance(dim, dict) or str(dim.get("unit") or "") != "Quantity":
                continue
            usd = _safe_float((dim.get("pricePerUnit") or {}).get("USD"))
            if usd is None or usd == 0.0:
                continue
            _keep_newest(
                entries,
                InstancePricing(
                    instance_type=instance_type,
                    price=usd / HOURS_PER_YEAR,
                    price_type=PRICE_RESERVED,
                    price_timestamp=effective,
                ),
            )

    return entries


class PricingAdapter:
    """Pricing API client wrapper with request pacing."""

    def __init__(self, client: Any, *, limiter: Optional[AsyncTokenBucket] = None) -> None:
        self._client = client
        self._limiter = limiter or pricing_rate_limiter()

    async def _paged(self, method: str, result_key: str, **params: Any) -> List[Any]:
        out: List[Any] = []
        next_token: Optional[str] = None
        while True:
            kwargs = dict(params)
            if next_token:
                kwargs["NextToken"] = next_token
            await self._limiter.acquire()
            resp = await call(self._client, method, **kwargs)
            out.extend(resp.get(result_key, []) or [])
            next_token = resp.get("NextToken")
            if not next_token:
                return out

    async def describe_services(self, service_code: Optional[str] = None) -> Dict[str, AwsService]:
        params: Dict[str, Any] = {}
        if service_code:
            params["ServiceCode"] = service_code
        services: Dict[str, AwsService] = {}
        for item in await self._paged("describe_services", "Services", **params):
            code = item.get("ServiceCode")
            names = item.get("AttributeNames")
            if code and names is not None:
                services[str(code)] = AwsService(service_code=str(code), attributes=tuple(map(str, names)))
        return services

    async def get_attribute_values(self, service_code: str, attribute_name: str) -> List[str]:
        items = await self._paged(
            "get_attribute_values",
            "AttributeValues",
            ServiceCode=service_code,
            AttributeName=attribute_name,
        )
        return [str(item["Value"]) for item in items if item.get("Value") is not None]

    async def get_prices(self, instance_type: str) -> Dict[PriceKey, InstancePricing]:
        """Newest OnDemand and Reserved hourly price for one instance type."""
        entries: Dict[PriceKey, InstancePricing] = {}
        price_list = await self._paged(
            "get_products",
            "PriceList",
            FormatVersion="aws_v1",
            ServiceCode="AmazonEC2",
            Filters=ec2_price_filters(instance_type),
        )
        for item in price_list:
            parse_price_item(item, instance_type=instance_type, entries=entries)
        return entries


__all__ = [
    "HOURS_PER_YEAR",
    "PRICING_LOCATION",
    "AwsService",
    "PricingAdapter",
    "ec2_price_filters",
    "parse_price_item",
]
