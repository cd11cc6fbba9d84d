"""Deterministic port and schema allocation for iterations."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field

from iterwork.core.templating import TemplateKind, TemplateRenderer
from iterwork.errors import AllocationExhaustedError
from iterwork.models.context import DatabaseConfig, DatabaseKind, ServiceConfig

OFFSET_BUCKETS = 20
BUCKET_WIDTH = 10

_RENDERER = TemplateRenderer()


@dataclass(slots=True)
class DatabaseSlot:
    """Allocated database port and schema."""

    port: int
    schema_name: str


@dataclass(slots=True)
class Allocation:
    """Ports and schema assigned to one iteration."""

    offset: int
    services: dict[str, int] = field(default_factory=dict)
    database: DatabaseSlot | None = None

    def ports(self) -> list[int]:
        ports = list(self.services.values())
        if self.database is not None:
            ports.append(self.database.port)
        return ports


@dataclass(slots=True)
class LiveAllocations:
    """Ports and schema names held by other iterations of the same project."""

    ports: set[int] = field(default_factory=set)
    schema_names: set[str] = field(default_factory=set)

    def collides(self, allocation: Allocation) -> bool:
        if any(port in self.ports for port in allocation.ports()):
            return True
        return allocation.database is not None and (
            allocation.database.schema_name in self.schema_names
        )


def name_hash(name: str) -> int:
    """First byte of the MD5 digest of ``name``."""
    return hashlib.md5(name.encode("utf-8")).digest()[0]


def offset_for(name: str, *, bucket_shift: int = 0) -> int:
    bucket = (name_hash(name) + bucket_shift) % OFFSET_BUCKETS
    return bucket * BUCKET_WIDTH


def schema_name_for(name: str, schema_template: str) -> str:
    return _RENDERER.render(
        TemplateKind.SCHEMA,
        schema_template,
        {"iteration": name.replace("-", "_")},
    )


def allocate(
    name: str,
    services: Mapping[str, ServiceConfig],
    database: DatabaseConfig | None,
    *,
    bucket_shift: int = 0,
) -> Allocation:
    """Map an iteration name to its ports and schema.

    Every service receives ``base_port + offset``. Services declared with the
    same base port as an earlier sibling move one further decade per sibling so
    they never share a port. The database follows the same offset against its
    own base port.
    """
    offset = offset_for(name, bucket_shift=bucket_shift)
    allocation = Allocation(offset=offset)

    siblings: dict[int, int] = {}
    for service_name, config in services.items():
        seen = siblings.get(config.base_port, 0)
        allocation.services[service_name] = config.base_port + offset + seen * BUCKET_WIDTH
        siblings[config.base_port] = seen + 1

    if database is not None and database.kind is not DatabaseKind.NONE:
        allocation.database = DatabaseSlot(
            port=database.base_port + offset,
            schema_name=schema_name_for(name, database.schema_template),
        )
    return allocation


def allocate_unique(
    name: str,
    services: Mapping[str, ServiceConfig],
    database: DatabaseConfig | None,
    taken: LiveAllocations,
) -> Allocation:
    """Allocate, walking to the next offset bucket while ``taken`` collides."""
    for shift in range(OFFSET_BUCKETS):
        allocation = allocate(name, services, database, bucket_shift=shift)
        if not taken.collides(allocation):
            return allocation
    msg = f"no free port bucket for iteration {name}"
    raise AllocationExhaustedError(
        msg, remedy="remove an unused iteration to free its ports"
    )
