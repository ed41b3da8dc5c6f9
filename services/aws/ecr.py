"""ECR adapter: repositories, images and untagged-image cleanup."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

from contracts.resources import EcrImage
from infra.logging_config import StructuredLogger
from services.aws._common import call, collect, now_utc, safe_float, utc

log = StructuredLogger(__name__)


class EcrAdapter:
    def __init__(self, client: Any) -> None:
        self._client = client

    async def list_repositories(self) -> list[str]:
        items = await collect(
            self._client,
            "describe_repositories",
            "repositories",
            request_token_key="nextToken",
            response_token_keys=("nextToken",),
        )
        return [str(item["repositoryName"]) for item in items if item.get("repositoryName")]

    async def list_images(self, repository: str) -> list[EcrImage]:
        items = await collect(
            self._client,
            "describe_images",
            "imageDetails",
            params={"repositoryName": repository},
            request_token_key="nextToken",
            response_token_keys=("nextToken",),
        )
        out: list[EcrImage] = []
        for item in items:
            digest = item.get("imageDigest")
            if not digest:
                continue
            out.append(
                EcrImage(
                    repository=repository,
                    digest=str(digest),
                    tags=tuple(str(tag) for tag in item.get("imageTags", []) or []),
                    pushed_at=utc(item.get("imagePushedAt")) or now_utc(),
                    image_size=safe_float(item.get("imageSizeInBytes")) / 1e6,
                )
            )
        return out

    async def delete_images(self, repository: str, digests: Sequence[str]) -> None:
        if not digests:
            return
        await call(
            self._client,
            "batch_delete_image",
            repositoryName=repository,
            imageIds=[{"imageDigest": digest} for digest in digests],
        )

    async def cleanup_images(self) -> int:
        """Delete untagged images in every repository; returns the count removed."""

        async def _cleanup(repository: str) -> int:
            untagged = [image.digest for image in await self.list_images(repository) if not image.tags]
            await self.delete_images(repository, untagged)
            return len(untagged)

        repositories = await self.list_repositories()
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(_cleanup(repo)) for repo in repositories]
        removed = sum(task.result() for task in tasks)
        log.info("ecr_cleanup", repositories=len(repositories), removed=removed)
        return removed


__all__ = ["EcrAdapter"]
