"""IAM adapter: users, groups, memberships and access keys."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from dateutil import parser as date_parser

from contracts.resources import AccessKeyMeta, IamGroup, IamUser, NewAccessKey
from services.aws._common import call, collect, now_utc, tag_map, utc

# AWS refuses a third key per user.
MAX_ACCESS_KEYS_PER_USER = 2


def _create_date(value: Any) -> datetime:
    """SDK datetimes pass through; strings are parsed; anything else is now."""
    if isinstance(value, datetime):
        return utc(value) or now_utc()
    if isinstance(value, str) and value.strip():
        try:
            return utc(date_parser.isoparse(value)) or now_utc()
        except ValueError:
            return now_utc()
    return now_utc()


def _parse_user(item: Mapping[str, Any]) -> IamUser | None:
    if not item.get("UserName") or not item.get("UserId"):
        return None
    return IamUser(
        arn=str(item.get("Arn") or ""),
        create_date=_create_date(item.get("CreateDate")),
        user_id=str(item["UserId"]),
        user_name=str(item["UserName"]),
        tags=tag_map(item.get("Tags")),
    )


def _parse_group(item: Mapping[str, Any]) -> IamGroup | None:
    if not item.get("GroupName") or not item.get("GroupId"):
        return None
    return IamGroup(
        arn=str(item.get("Arn") or ""),
        create_date=_create_date(item.get("CreateDate")),
        group_id=str(item["GroupId"]),
        group_name=str(item["GroupName"]),
    )


def _page_params() -> dict[str, Any]:
    return {
        "request_token_key": "Marker",
        "response_token_keys": ("Marker",),
    }


class IamAdapter:
    def __init__(self, client: Any) -> None:
        self._client = client

    async def list_users(self) -> list[IamUser]:
        items = await collect(self._client, "list_users", "Users", **_page_params())
        return [user for user in map(_parse_user, items) if user is not None]

    async def get_user(self, user_name: str | None = None) -> IamUser | None:
        """The named user, or the caller when ``user_name`` is None."""
        params = {"UserName": user_name} if user_name else {}
        resp = await call(self._client, "get_user", **params)
        return _parse_user(resp.get("User") or {})

    async def list_groups(self) -> list[IamGroup]:
        items = await collect(self._client, "list_groups", "Groups", **_page_params())
        return [group for group in map(_parse_group, items) if group is not None]

    async def list_groups_for_user(self, user_name: str) -> list[IamGroup]:
        items = await collect(
            self._client,
            "list_groups_for_user",
            "Groups",
            params={"UserName": user_name},
            **_page_params(),
        )
        return [group for group in map(_parse_group, items) if group is not None]

    async def list_access_keys(self, user_name: str) -> list[AccessKeyMeta]:
        items = await collect(
            self._client,
            "list_access_keys",
            "AccessKeyMetadata",
            params={"UserName": user_name},
            **_page_params(),
        )
        out: list[AccessKeyMeta] = []
        for item in items:
            key_id = item.get("AccessKeyId")
            if not key_id:
                continue
            out.append(
                AccessKeyMeta(
                    access_key_id=str(key_id),
                    user_name=str(item.get("UserName") or user_name),
                    status=str(item.get("Status") or ""),
                    create_date=_create_date(item.get("CreateDate")),
                )
            )
        return out

    async def create_user(self, user_name: str) -> IamUser | None:
        resp = await call(self._client, "create_user", UserName=user_name)
        return _parse_user(resp.get("User") or {})

    async def delete_user(self, user_name: str) -> None:
        """Delete a user after removing its access keys and group memberships."""
        for key in await self.list_access_keys(user_name):
            await self.delete_access_key(user_name, key.access_key_id)
        for group in await self.list_groups_for_user(user_name):
            await self.remove_user_from_group(user_name, group.group_name)
        await call(self._client, "delete_user", UserName=user_name)

    async def add_user_to_group(self, user_name: str, group_name: str) -> None:
        await call(self._client, "add_user_to_group", UserName=user_name, GroupName=group_name)

    async def remove_user_from_group(self, user_name: str, group_name: str) -> None:
        await call(self._client, "remove_user_from_group", UserName=user_name, GroupName=group_name)

    async def create_access_key(self, user_name: str) -> NewAccessKey:
        resp = await call(self._client, "create_access_key", UserName=user_name)
        key = resp.get("AccessKey") or {}
        return NewAccessKey(
            access_key_id=str(key.get("AccessKeyId") or ""),
            user_name=str(key.get("UserName") or user_name),
            status=str(key.get("Status") or ""),
            create_date=_create_date(key.get("CreateDate")),
            secret_access_key=str(key.get("SecretAccessKey") or ""),
        )

    async def delete_access_key(self, user_name: str, access_key_id: str) -> None:
        await call(self._client, "delete_access_key", UserName=user_name, AccessKeyId=access_key_id)


__all__ = ["MAX_ACCESS_KEYS_PER_USER", "IamAdapter"]
