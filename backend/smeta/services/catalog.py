"""
Catalog lookup boundary.

The estimate model only needs four facts about a catalog work or material:
name, unit, base price and (for materials of a work) the consumption factor.
``InMemoryCatalog`` serves tests and seeding; ``SqlCatalog`` reads the
``works`` / ``materials`` / ``work_materials`` tables for one tenant and caches
lookups in a ``CacheStore`` that may be shared across requests.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from smeta.config import CATALOG_CACHE_TTL_SECONDS
from smeta.errors import CatalogWorkNotFoundError, CatalogWorkReadOnlyError
from smeta.models.orm_models import Material, Work, WorkMaterial
from smeta.services.cache_store import CacheStore

logger = logging.getLogger("smeta-catalog")


@dataclass(frozen=True)
class CatalogWork:
    id: str
    name: str
    code: Optional[str] = None
    unit: Optional[str] = None
    base_price: Optional[float] = None
    phase: Optional[str] = None
    section: Optional[str] = None
    subsection: Optional[str] = None


@dataclass(frozen=True)
class CatalogMaterial:
    id: str
    name: str
    sku: Optional[str] = None
    unit: Optional[str] = None
    price: Optional[float] = None
    image: Optional[str] = None


@dataclass(frozen=True)
class WorkMaterialNorm:
    material: CatalogMaterial
    consumption: float = 1.0
    is_required: bool = True


class InMemoryCatalog:
    """Dictionary-backed catalog with the same async interface as ``SqlCatalog``."""

    def __init__(
        self,
        works: Iterable[CatalogWork] = (),
        materials: Iterable[CatalogMaterial] = (),
        norms: Optional[Dict[str, List[WorkMaterialNorm]]] = None,
    ):
        self.works = {w.id: w for w in works}
        self.materials = {m.id: m for m in materials}
        self.norms = dict(norms or {})

    async def get_work(self, work_id: str) -> Optional[CatalogWork]:
        return self.works.get(work_id)

    async def get_material(self, material_id: str) -> Optional[CatalogMaterial]:
        return self.materials.get(material_id)

    async def materials_for_work(self, work_id: str) -> List[WorkMaterialNorm]:
        return list(self.norms.get(work_id, []))


def _float_or_none(value) -> Optional[float]:
    return None if value is None else float(value)


def _visible_to(model, tenant_id: str):
    """Global rows (no tenant) plus the tenant's own rows."""
    return or_(model.tenant_id.is_(None), model.tenant_id == tenant_id)


def _catalog_work(row: Work) -> CatalogWork:
    return CatalogWork(
        id=row.id,
        name=row.name,
        code=row.code,
        unit=row.unit,
        base_price=_float_or_none(row.base_price),
        phase=row.phase,
        section=row.section,
        subsection=row.subsection,
    )


def _catalog_material(row: Material) -> CatalogMaterial:
    return CatalogMaterial(
        id=row.id,
        name=row.name,
        sku=row.sku,
        unit=row.unit,
        price=_float_or_none(row.price),
        image=row.image_url,
    )


class SqlCatalog:
    """
    Catalog as one tenant sees it: the global reference rows plus its own.

    Cache keys carry the tenant, so a shared ``CacheStore`` never serves one
    tenant's private works to another.
    """

    def __init__(self, session: AsyncSession, tenant_id: str, cache: Optional[CacheStore] = None):
        self.session = session
        self.tenant_id = tenant_id
        self.cache = cache or CacheStore(ttl_seconds=CATALOG_CACHE_TTL_SECONDS)

    def _key(self, kind: str, ref: str):
        return (kind, self.tenant_id, ref)

    async def get_work(self, work_id: str) -> Optional[CatalogWork]:
        return await self.cache.get_or_load(self._key("work", work_id), lambda: self._load_work(work_id))

    async def get_material(self, material_id: str) -> Optional[CatalogMaterial]:
        return await self.cache.get_or_load(
            self._key("material", material_id), lambda: self._load_material(material_id)
        )

    async def materials_for_work(self, work_id: str) -> List[WorkMaterialNorm]:
        return await self.cache.get_or_load(self._key("norms", work_id), lambda: self._load_norms(work_id))

    async def update_work_price(self, work_id: str, price: float) -> CatalogWork:
        """
        Write ``price`` as the catalog base price of one of the tenant's works.

        Runs inside the caller's transaction. Global works are read-only.
        """
        row = await self._work_row(work_id)
        if row is None:
            raise CatalogWorkNotFoundError(work_id)
        if row.tenant_id is None:
            raise CatalogWorkReadOnlyError(work_id)
        row.base_price = Decimal(str(price))
        await self.session.flush()
        self.cache.invalidate(self._key("work", work_id))
        logger.info("Catalog base price of %s set to %.2f", work_id, price)
        return _catalog_work(row)

    async def _work_row(self, work_id: str) -> Optional[Work]:
        result = await self.session.execute(
            select(Work).where(Work.id == work_id, _visible_to(Work, self.tenant_id))
        )
        return result.scalar_one_or_none()

    async def _load_work(self, work_id: str) -> Optional[CatalogWork]:
        row = await self._work_row(work_id)
        if row is None:
            logger.debug("Catalog work %s not found", work_id)
            return None
        return _catalog_work(row)

    async def _load_material(self, material_id: str) -> Optional[CatalogMaterial]:
        result = await self.session.execute(
            select(Material).where(Material.id == material_id, _visible_to(Material, self.tenant_id))
        )
        row = result.scalar_one_or_none()
        return None if row is None else _catalog_material(row)

    async def _load_norms(self, work_id: str) -> List[WorkMaterialNorm]:
        if await self._work_row(work_id) is None:
            return []
        result = await self.session.execute(
            select(WorkMaterial, Material)
            .join(Material, WorkMaterial.material_id == Material.id)
            .where(WorkMaterial.work_id == work_id, _visible_to(Material, self.tenant_id))
            .order_by(Material.name)
        )
        return [
            WorkMaterialNorm(
                material=_catalog_material(material),
                consumption=float(norm.consumption),
                is_required=norm.is_required,
            )
            for norm, material in result.all()
        ]
