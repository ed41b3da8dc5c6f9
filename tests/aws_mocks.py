"""Shared AWS test doubles for adapter, orchestrator and pipeline tests.

These mocks avoid boto3 client construction and focus on:
- recording every SDK call with its keyword arguments
- canned (optionally token-paged) responses per operation
- an in-memory S3 bucket store for the mail pipelines
- compact ``AwsAdapters`` construction
"""

from __future__ import annotations

import io
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

from botocore.exceptions import ClientError

from services.aws.clients import AwsAdapters
from services.aws.ec2 import Ec2Adapter
from services.aws.ecr import EcrAdapter
from services.aws.iam import IamAdapter
from services.aws.pricing import PricingAdapter
from services.aws.route53 import Route53Adapter
from services.aws.s3 import S3Adapter
from services.aws.sts import StsAdapter
from services.rate_limiter import AsyncTokenBucket

Response = Mapping[str, Any] | list[Mapping[str, Any]] | Callable[[dict[str, Any]], Mapping[str, Any]]

LAUNCH_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_client_error(
    operation_name: str,
    *,
    code: str = "AccessDeniedException",
    message: str = "Denied",
) -> ClientError:
    """Build a deterministic botocore ClientError payload for tests."""
    return ClientError({"Error": {"Code": code, "Message": message}}, operation_name)


async def no_sleep(_seconds: float) -> None:
    """Drop-in for ``asyncio.sleep`` that returns immediately."""
    return None


class FakeAwsClient:
    """Generic fake SDK client.

    ``responses`` maps an operation (``describe_instances``) to a dict, a
    list of pages served in order (the last page repeats), or a callable
    receiving the call kwargs. Unknown operations return ``{}``.
    ``fail_times`` makes an operation raise that many ClientErrors first.
    """

    def __init__(
        self,
        *,
        region: str = "us-east-1",
        responses: Mapping[str, Response] | None = None,
        raise_on: Iterable[str] = (),
        raise_code: str = "AccessDeniedException",
        fail_times: Mapping[str, int] | None = None,
    ) -> None:
        self.meta = SimpleNamespace(region_name=region)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._responses = dict(responses or {})
        self._raise_on = set(raise_on)
        self._raise_code = raise_code
        self._fail_times = dict(fail_times or {})
        self._page: dict[str, int] = {}

    def __getattr__(self, name: str) -> Callable[..., Any]:
        # no paginators: adapters fall back to their token loop
        if name.startswith("_") or name in {"get_paginator", "can_paginate"}:
            raise AttributeError(name)

        def _call(**kwargs: Any) -> Any:
            self.calls.append((name, dict(kwargs)))
            if name in self._raise_on:
                raise make_client_error(name, code=self._raise_code)
            if self._fail_times.get(name, 0) > 0:
                self._fail_times[name] -= 1
                raise make_client_error(name, code="Throttling", message="Rate exceeded")
            resp = self._responses.get(name, {})
            if callable(resp):
                return resp(dict(kwargs))
            if isinstance(resp, list):
                idx = min(self._page.get(name, 0), len(resp) - 1)
                self._page[name] = self._page.get(name, 0) + 1
                return resp[idx]
            return resp

        return _call

    def calls_to(self, name: str) -> list[dict[str, Any]]:
        """Kwargs of every recorded call to ``name``, in order."""
        return [kwargs for op, kwargs in self.calls if op == name]


class FakeS3Client:
    """In-memory bucket store implementing the bucket and object calls S3Adapter uses."""

    def __init__(self, objects: Mapping[tuple[str, str], bytes] | None = None, *, page_size: int = 1000) -> None:
        self.meta = SimpleNamespace(region_name="us-east-1")
        self.objects: dict[tuple[str, str], bytes] = dict(objects or {})
        self.buckets: set[str] = {b for b, _k in self.objects}
        self.page_size = page_size
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def list_buckets(self) -> dict:
        self.calls.append(("list_buckets", {}))
        return {"Buckets": [{"Name": b, "CreationDate": LAUNCH_TIME} for b in sorted(self.buckets)]}

    def create_bucket(self, *, Bucket: str) -> dict:
        self.calls.append(("create_bucket", {"Bucket": Bucket}))
        self.buckets.add(Bucket)
        return {"Location": f"/{Bucket}"}

    def delete_bucket(self, *, Bucket: str) -> dict:
        self.calls.append(("delete_bucket", {"Bucket": Bucket}))
        self.buckets.discard(Bucket)
        return {}

    def keys(self, bucket: str, prefix: str = "") -> list[str]:
        return sorted(k for b, k in self.objects if b == bucket and k.startswith(prefix))

    def list_objects(self, *, Bucket: str, Prefix: str = "", Marker: str = "", MaxKeys: int | None = None) -> dict:
        self.calls.append(("list_objects", {"Bucket": Bucket, "Prefix": Prefix, "Marker": Marker}))
        keys = [k for k in self.keys(Bucket, Prefix) if k > Marker]
        limit = self.page_size if MaxKeys is None else min(self.page_size, MaxKeys)
        page = keys[:limit]
        return {
            "Contents": [
                {"Key": k, "Size": len(self.objects[(Bucket, k)]), "ETag": '"etag"', "LastModified": LAUNCH_TIME}
                for k in page
            ],
            "IsTruncated": len(keys) > len(page),
        }

    def get_object(self, *, Bucket: str, Key: str) -> dict:
        self.calls.append(("get_object", {"Bucket": Bucket, "Key": Key}))
        if (Bucket, Key) not in self.objects:
            raise make_client_error("GetObject", code="NoSuchKey", message="Not Found")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)]), "ETag": '"etag"'}

    def put_object(self, *, Bucket: str, Key: str, Body: bytes) -> dict:
        self.calls.append(("put_object", {"Bucket": Bucket, "Key": Key}))
        self.objects[(Bucket, Key)] = bytes(Body)
        return {"ETag": '"etag"'}

    def delete_object(self, *, Bucket: str, Key: str) -> dict:
        self.calls.append(("delete_object", {"Bucket": Bucket, "Key": Key}))
        self.objects.pop((Bucket, Key), None)
        return {}


def make_instance_item(
    instance_id: str,
    *,
    name: str | None = None,
    state: str = "running",
    dns_name: str | None = None,
    instance_type: str = "t3.micro",
    launch_time: datetime = LAUNCH_TIME,
    availability_zone: str = "us-east-1a",
) -> dict[str, Any]:
    """One ``Reservations[].Instances[]`` entry as DescribeInstances returns it."""
    item: dict[str, Any] = {
        "InstanceId": instance_id,
        "PublicDnsName": dns_name if dns_name is not None else f"{instance_id}.compute.amazonaws.com",
        "State": {"Name": state},
        "InstanceType": instance_type,
        "Placement": {"AvailabilityZone": availability_zone},
        "LaunchTime": launch_time,
    }
    if name is not None:
        item["Tags"] = [{"Key": "Name", "Value": name}]
    return item


def describe_instances(*items: Mapping[str, Any]) -> dict[str, Any]:
    return {"Reservations": [{"Instances": list(items)}]}


def make_adapters(
    *,
    ec2: Any = None,
    ecr: Any = None,
    iam: Any = None,
    route53: Any = None,
    s3: Any = None,
    sts: Any = None,
    pricing: Any = None,
    owner_id: str | None = "123456789012",
) -> AwsAdapters:
    """AwsAdapters over fake clients; unspecified services get an empty FakeAwsClient."""
    return AwsAdapters(
        ec2=Ec2Adapter(ec2 or FakeAwsClient(), my_owner_id=owner_id),
        ecr=EcrAdapter(ecr or FakeAwsClient()),
        iam=IamAdapter(iam or FakeAwsClient()),
        route53=Route53Adapter(route53 or FakeAwsClient()),
        s3=S3Adapter(s3 or FakeS3Client()),
        sts=StsAdapter(sts or FakeAwsClient()),
        pricing=PricingAdapter(
            pricing or FakeAwsClient(),
            limiter=AsyncTokenBucket(rate=1000.0, capacity=1000.0, sleep=no_sleep),
        ),
        region="us-east-1",
    )
