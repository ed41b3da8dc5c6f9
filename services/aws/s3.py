"""S3 adapter used by the inbound-email pipeline and DMARC ingestion.

Object transfers and listings are wrapped in ``exponential_retry``; the
listing follows ``Marker`` pagination and honours an optional key budget.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from contracts.resources import S3Object
from infra.logging_config import StructuredLogger
from services.aws._common import call, safe_int, utc
from services.retry import exponential_retry

log = StructuredLogger(__name__)


class S3Adapter:
    def __init__(self, client: Any, *, max_keys: int | None = None) -> None:
        self._client = client
        self._max_keys = max_keys

    async def list_buckets(self) -> list[str]:
        resp = await call(self._client, "list_buckets")
        return [str(b["Name"]) for b in resp.get("Buckets", []) or [] if b.get("Name")]

    async def create_bucket(self, bucket: str) -> str:
        resp = await call(self._client, "create_bucket", Bucket=bucket)
        return str(resp.get("Location") or "")

    async def delete_bucket(self, bucket: str) -> None:
        await call(self._client, "delete_bucket", Bucket=bucket)

    async def delete_key(self, bucket: str, key: str) -> None:
        await call(self._client, "delete_object", Bucket=bucket, Key=key)

    async def copy_key(self, source: str, bucket_to: str, key_to: str) -> str | None:
        """Copy ``bucket/key`` (``source``) to ``bucket_to/key_to``; returns the new ETag."""

        async def _copy() -> dict[str, Any]:
            return await call(self._client, "copy_object", CopySource=source, Bucket=bucket_to, Key=key_to)

        resp = await exponential_retry(_copy, name="CopyObject")
        return (resp.get("CopyObjectResult") or {}).get("ETag")

    async def upload(self, path: str | Path, bucket: str, key: str) -> None:
        local = Path(path)
        if not local.exists():
            raise FileNotFoundError(f"File doesn't exist {local}")

        async def _put() -> dict[str, Any]:
            body = await asyncio.to_thread(local.read_bytes)
            return await call(self._client, "put_object", Bucket=bucket, Key=key, Body=body)

        await exponential_retry(_put, name="PutObject")

    async def download_bytes(self, bucket: str, key: str) -> bytes:
        async def _get() -> bytes:
            resp = await call(self._client, "get_object", Bucket=bucket, Key=key)
            return await asyncio.to_thread(resp["Body"].read)

        return await exponential_retry(_get, name="GetObject")

    async def download_to_string(self, bucket: str, key: str) -> str:
        return (await self.download_bytes(bucket, key)).decode("utf-8")

    async def download_to_file(self, bucket: str, key: str, path: str | Path) -> str:
        """Write the object to ``path``; returns the unquoted ETag."""

        async def _get() -> str:
            resp = await call(self._client, "get_object", Bucket=bucket, Key=key)
            data = await asyncio.to_thread(resp["Body"].read)
            await asyncio.to_thread(Path(path).write_bytes, data)
            return str(resp.get("ETag") or "").strip('"')

        return await exponential_retry(_get, name="GetObject")

    async def list_objects(self, bucket: str, prefix: str | None = None) -> list[S3Object]:
        """Every object under ``prefix``, following ``Marker`` until not truncated."""

        async def _list() -> list[S3Object]:
            objects: list[S3Object] = []
            marker: str | None = None
            remaining = self._max_keys
            while True:
                params: dict[str, Any] = {"Bucket": bucket}
                if prefix:
                    params["Prefix"] = prefix
                if marker:
                    params["Marker"] = marker
                if remaining is not None:
                    params["MaxKeys"] = remaining
                resp = await call(self._client, "list_objects", **params)
                contents = resp.get("Contents", []) or []
                for item in contents:
                    if item.get("Key"):
                        objects.append(
                            S3Object(
                                key=str(item["Key"]),
                                size=safe_int(item.get("Size")),
                                etag=str(item.get("ETag") or "").strip('"'),
                                last_modified=utc(item.get("LastModified")),
                            )
                        )
                if remaining is not None:
                    remaining = max(0, remaining - len(contents))
                    if remaining == 0:
                        break
                if not resp.get("IsTruncated"):
                    break
                next_marker = resp.get("NextMarker")
                if not next_marker and contents and contents[-1].get("Key"):
                    next_marker = str(contents[-1]["Key"])
                if not next_marker or next_marker == marker:
                    log.warning("s3_listing_stalled", bucket=bucket, prefix=prefix, marker=marker)
                    break
                marker = str(next_marker)
            return objects

        return await exponential_retry(_list, name="ListObjects")

    async def list_keys(self, bucket: str, prefix: str | None = None) -> set[str]:
        return {obj.key for obj in await self.list_objects(bucket, prefix)}


__all__ = ["S3Adapter"]
