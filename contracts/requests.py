"""Validated launch requests.

Both models fill missing security group, key pair and bid price from
``ConsoleConfig``; a request that cannot be completed raises ``ConfigError``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from contracts.errors import ConfigError
from infra.config import ConsoleConfig

DEFAULT_SCRIPT = "setup_aws.sh"


def parse_tags(items: Iterable[str] | Mapping[str, str] | None) -> dict[str, str]:
    """``["alpha", "env:prod"]`` -> ``{"Name": "alpha", "env": "prod"}``."""
    if items is None:
        return {}
    if isinstance(items, Mapping):
        return {str(k): str(v) for k, v in items.items()}
    out: dict[str, str] = {}
    for raw in items:
        text = str(raw).strip()
        if not text:
            continue
        key, sep, value = text.partition(":")
        if sep and value:
            out[key] = value
        else:
            out["Name"] = key
    return out


class _LaunchBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    ami: str = Field(min_length=1)
    instance_type: str = Field(min_length=1)
    security_group: str | None = None
    script: str = DEFAULT_SCRIPT
    key_name: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> dict[str, str]:
        if isinstance(value, str):
            value = value.split(",")
        return parse_tags(value)

    @field_validator("ami", "instance_type", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("script", mode="before")
    @classmethod
    def _default_script(cls, value: Any) -> str:
        return str(value or "").strip() or DEFAULT_SCRIPT

    def _resolved_common(self, console: ConsoleConfig, *, security_group: str | None) -> dict[str, Any]:
        group = self.security_group or security_group
        if not group:
            raise ConfigError("NO DEFAULT_SECURITY_GROUP")
        key_name = self.key_name or console.default_key_name
        if not key_name:
            raise ConfigError("NO DEFAULT_KEY_NAME")
        return {"security_group": group, "key_name": key_name}


class InstanceRequest(_LaunchBase):
    """On-demand launch."""

    def with_defaults(self, console: ConsoleConfig) -> InstanceRequest:
        values = self._resolved_common(console, security_group=console.default_security_group)
        return self.model_copy(update=values)


class SpotRequest(_LaunchBase):
    """Spot bid; ``price`` defaults to ``max_spot_price``."""

    price: float | None = Field(default=None, gt=0.0)

    def with_defaults(self, console: ConsoleConfig) -> SpotRequest:
        values = self._resolved_common(
            console,
            security_group=console.spot_security_group or console.default_security_group,
        )
        values["price"] = self.price if self.price is not None else console.max_spot_price
        return self.model_copy(update=values)


__all__ = ["DEFAULT_SCRIPT", "InstanceRequest", "SpotRequest", "parse_tags"]
