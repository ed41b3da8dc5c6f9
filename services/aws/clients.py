"""
services/aws/clients.py

Adapter bag + region-aware factory (DI-friendly).

Goals:
- Build every Cloud Adapter from one boto3 session and one botocore Config.
- Cache adapters per region so a region switch does not rebuild clients.
- Keep pricing on us-east-1 regardless of the console region.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import boto3
from botocore.config import Config

from infra.aws_config import PRICING_REGION
from services.aws.ec2 import Ec2Adapter
from services.aws.ecr import EcrAdapter
from services.aws.iam import IamAdapter
from services.aws.pricing import PricingAdapter
from services.aws.route53 import Route53Adapter
from services.aws.s3 import S3Adapter
from services.aws.sts import StsAdapter


@dataclass(frozen=True)
class AwsAdapters:
    """Cloud Adapter modules bound to one region."""

    ec2: Ec2Adapter
    ecr: EcrAdapter
    iam: IamAdapter
    route53: Route53Adapter
    s3: S3Adapter
    sts: StsAdapter
    pricing: PricingAdapter
    region: str = ""


class AdapterFactory:
    """
    Creates and caches adapters per region.

    Usage:
      factory = AdapterFactory(session=boto3.Session(), sdk_config=SDK_CONFIG, my_owner_id="123")
      aws = factory.for_region("us-east-1")

    IAM, Route53, STS and Pricing are global services; their clients are
    shared across regions.
    """

    def __init__(
        self,
        *,
        session: boto3.Session,
        sdk_config: Config | None = None,
        my_owner_id: str | None = None,
    ) -> None:
        self._session = session
        self._sdk_config = sdk_config
        self._owner_id = my_owner_id
        self._by_region: dict[str, AwsAdapters] = {}
        self._global: dict[str, Any] = {}

    def _client(self, service: str, *, region: str | None) -> Any:
        kwargs: dict[str, Any] = {}
        if region:
            kwargs["region_name"] = region
        if self._sdk_config is not None:
            kwargs["config"] = self._sdk_config
        return self._session.client(service, **kwargs)

    def _global_client(self, service: str, *, region: str | None = None) -> Any:
        if service not in self._global:
            self._global[service] = self._client(service, region=region)
        return self._global[service]

    def for_region(self, region: str) -> AwsAdapters:
        """Return cached adapters for a region, creating them if needed."""
        reg = str(region or "").strip()
        if not reg:
            raise ValueError("region must be a non-empty string")

        cached = self._by_region.get(reg)
        if cached is not None:
            return cached

        adapters = AwsAdapters(
            ec2=Ec2Adapter(self._client("ec2", region=reg), my_owner_id=self._owner_id),
            ecr=EcrAdapter(self._client("ecr", region=reg)),
            iam=IamAdapter(self._global_client("iam")),
            route53=Route53Adapter(self._global_client("route53")),
            s3=S3Adapter(self._client("s3", region=reg)),
            sts=StsAdapter(self._global_client("sts", region=reg)),
            pricing=self._pricing(),
            region=reg,
        )
        self._by_region[reg] = adapters
        return adapters

    def _pricing(self) -> PricingAdapter:
        adapter = self._global.get("pricing_adapter")
        if adapter is None:
            adapter = PricingAdapter(self._global_client("pricing", region=PRICING_REGION))
            self._global["pricing_adapter"] = adapter
        return adapter

    def clear_cache(self) -> None:
        """Clears per-region cache. (Mostly useful for tests.)"""
        self._by_region.clear()


def default_factory() -> AdapterFactory:
    """Factory built from the process settings and the shared SDK config."""
    from infra.aws_config import SDK_CONFIG
    from infra.config import get_settings

    return AdapterFactory(
        session=boto3.Session(),
        sdk_config=SDK_CONFIG,
        my_owner_id=get_settings().console.my_owner_id,
    )


__all__ = ["AdapterFactory", "AwsAdapters", "default_factory"]
