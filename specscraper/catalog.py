"""Catalog collaborator: device records, slug ownership and known targets."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Sequence

from asyncpg import Pool

from .errors import SlugConflict
from .models import CandidateOption, CatalogDevice, DerivedEntity

LOGGER = logging.getLogger(__name__)


class Catalog(Protocol):
    async def get_device(self, device_id: str) -> Optional[CatalogDevice]:
        ...

    async def find_by_target(self, target_id: str) -> Optional[CatalogDevice]:
        """Device that already owns ``target_id``, if any."""
        ...

    async def link_target(self, device_id: str, target_id: str) -> None:
        ...

    async def create_device(self, device_id: str, derived: DerivedEntity, target_id: str) -> CatalogDevice:
        """Create a device from a confirmed derived record.

        Raises
        ------
        SlugConflict
            If ``target_id`` already belongs to another device
        """
        ...

    async def list_known_targets(self, name_filter: str, limit: int = 200) -> List[CandidateOption]:
        ...

    async def remember_targets(self, candidates: Sequence[CandidateOption]) -> None:
        ...


def _device_name(derived: DerivedEntity) -> str:
    data = derived.data
    brand, name = data.get("brand"), data.get("name") or ""
    return f"{brand} {name}".strip() if brand and not name.startswith(brand) else name


class MemoryCatalog:
    """In-process catalog for development and tests."""

    def __init__(self) -> None:
        self.devices: Dict[str, CatalogDevice] = {}
        self.targets: Dict[str, CandidateOption] = {}

    def add_device(self, device_id: str, name: str, target_id: Optional[str] = None, brand: Optional[str] = None) -> CatalogDevice:
        device = CatalogDevice(id=device_id, name=name, brand=brand, target_id=target_id)
        self.devices[device_id] = device
        return device

    async def get_device(self, device_id: str) -> Optional[CatalogDevice]:
        return self.devices.get(device_id)

    async def find_by_target(self, target_id: str) -> Optional[CatalogDevice]:
        for device in self.devices.values():
            if device.target_id == target_id:
                return device
        return None

    async def link_target(self, device_id: str, target_id: str) -> None:
        device = self.devices.get(device_id)
        if device is not None:
            self.devices[device_id] = device.model_copy(update={"target_id": target_id})

    async def create_device(self, device_id: str, derived: DerivedEntity, target_id: str) -> CatalogDevice:
        owner = await self.find_by_target(target_id)
        if owner is not None and owner.id != device_id:
            raise SlugConflict(target_id, owner.id, owner.name)
        return self.add_device(device_id, _device_name(derived), target_id, derived.data.get("brand"))

    async def list_known_targets(self, name_filter: str, limit: int = 200) -> List[CandidateOption]:
        tokens = name_filter.lower().split()
        matches = [
            target
            for target in self.targets.values()
            if all(token in target.name.lower() for token in tokens)
        ]
        return sorted(matches, key=lambda target: target.name)[:limit]

    async def remember_targets(self, candidates: Sequence[CandidateOption]) -> None:
        for candidate in candidates:
            self.targets[candidate.target_id] = candidate


class PostgresCatalog:
    """Catalog backed by ``catalog_devices`` / ``catalog_targets``."""

    def __init__(self, pool: Pool) -> None:
        self.pool = pool

    async def get_device(self, device_id: str) -> Optional[CatalogDevice]:
        row = await self.pool.fetchrow("SELECT id, name, brand, target_id FROM catalog_devices WHERE id = $1", device_id)
        return CatalogDevice.model_validate(dict(row)) if row else None

    async def find_by_target(self, target_id: str) -> Optional[CatalogDevice]:
        row = await self.pool.fetchrow(
            "SELECT id, name, brand, target_id FROM catalog_devices WHERE target_id = $1",
            target_id,
        )
        return CatalogDevice.model_validate(dict(row)) if row else None

    async def link_target(self, device_id: str, target_id: str) -> None:
        await self.pool.execute(
            "UPDATE catalog_devices SET target_id = $2 WHERE id = $1 AND target_id IS DISTINCT FROM $2",
            device_id,
            target_id,
        )

    async def create_device(self, device_id: str, derived: DerivedEntity, target_id: str) -> CatalogDevice:
        owner = await self.find_by_target(target_id)
        if owner is not None and owner.id != device_id:
            raise SlugConflict(target_id, owner.id, owner.name)
        row = await self.pool.fetchrow(
            """
            INSERT INTO catalog_devices (id, name, brand, target_id)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE
            SET name = EXCLUDED.name,
                brand = EXCLUDED.brand,
                target_id = EXCLUDED.target_id
            RETURNING id, name, brand, target_id
            """,
            device_id,
            _device_name(derived),
            derived.data.get("brand"),
            target_id,
        )
        LOGGER.info("Created catalog device %s for %s", device_id, target_id)
        return CatalogDevice.model_validate(dict(row))

    async def list_known_targets(self, name_filter: str, limit: int = 200) -> List[CandidateOption]:
        patterns = [f"%{token}%" for token in name_filter.lower().split()]
        rows = await self.pool.fetch(
            """
            SELECT target_id, name, source_url FROM catalog_targets
            WHERE LOWER(name) LIKE ALL($1::text[])
            ORDER BY name
            LIMIT $2
            """,
            patterns or ["%"],
            limit,
        )
        return [
            CandidateOption(name=row["name"], target_id=row["target_id"], source_url=row["source_url"])
            for row in rows
        ]

    async def remember_targets(self, candidates: Sequence[CandidateOption]) -> None:
        if not candidates:
            return
        await self.pool.executemany(
            """
            INSERT INTO catalog_targets (target_id, name, source_url)
            VALUES ($1, $2, $3)
            ON CONFLICT (target_id) DO UPDATE SET name = EXCLUDED.name, source_url = EXCLUDED.source_url
            """,
            [(c.target_id, c.name, c.source_url) for c in candidates],
        )
