"""STS adapter: caller identity."""

from __future__ import annotations

from typing import Any

from services.aws._common import call


class StsAdapter:
    def __init__(self, client: Any) -> None:
        self._client = client

    async def get_caller_identity(self) -> dict[str, str]:
        resp = await call(self._client, "get_caller_identity")
        return {
            "account": str(resp.get("Account") or ""),
            "arn": str(resp.get("Arn") or ""),
            "user_id": str(resp.get("UserId") or ""),
        }


__all__ = ["StsAdapter"]
