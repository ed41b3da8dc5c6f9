"""Contracts shared by the console core, the HTTP surface and the CLI.

The contracts package defines:
- normalised cloud resource views (transient)
- catalog rows mirrored by the Postgres tables
- resource kinds and launch requests
- the console error hierarchy
"""

from contracts import catalog, errors, resource_kind, resources
from contracts import requests as requests_module

__all__ = [
    "AdapterError",
    "BadRequest",
    "ConsoleError",
    "Ec2Instance",
    "InstanceFamily",
    "InstanceListRow",
    "InstancePricing",
    "InstanceRequest",
    "ResourceKind",
    "SpotRequest",
]

AdapterError = errors.AdapterError
BadRequest = errors.BadRequest
ConsoleError = errors.ConsoleError

Ec2Instance = resources.Ec2Instance

InstanceFamily = catalog.InstanceFamily
InstanceListRow = catalog.InstanceListRow
InstancePricing = catalog.InstancePricing

ResourceKind = resource_kind.ResourceKind

InstanceRequest = requests_module.InstanceRequest
SpotRequest = requests_module.SpotRequest
