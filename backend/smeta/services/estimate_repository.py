"""
Estimate persistence boundary.

Loads an estimate's items into an ``EstimateTree`` together with its
``OriginalPriceStore`` and saves the estimate payload back. Items are matched
by id on save so completion records keep pointing at the same lines; items
missing from the payload are deleted along with their materials and
completion records.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from smeta.config import DEFAULT_ESTIMATE_METADATA
from smeta.errors import EstimateNotFoundError, ForeignEstimateItemError
from smeta.models.orm_models import (
    Estimate,
    EstimateItem,
    EstimateItemMaterial,
    Material,
    WorkCompletion,
)
from smeta.services.coefficient_engine import OriginalPriceStore
from smeta.services.estimate_payload import metadata_from_payload, payload_item_ids, tree_from_rows
from smeta.services.line_item_tree import EstimateTree, round2

logger = logging.getLogger("smeta-estimates")


def _dec(value: Any) -> Decimal:
    return Decimal(str(round2(value or 0)))


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass
class LoadedEstimate:
    id: str
    metadata: Dict[str, Any]
    tree: EstimateTree
    store: OriginalPriceStore
    current_coefficient: float = 0.0
    project_id: Optional[str] = None
    item_ids: List[str] = field(default_factory=list)


class EstimateRepository:
    def __init__(self, session: AsyncSession, tenant_id: str):
        self.session = session
        self.tenant_id = tenant_id

    async def _get_estimate(self, estimate_id: str) -> Estimate:
        result = await self.session.execute(
            select(Estimate).where(
                Estimate.id == estimate_id,
                Estimate.tenant_id == self.tenant_id,
            )
        )
        estimate = result.scalar_one_or_none()
        if estimate is None:
            raise EstimateNotFoundError(estimate_id)
        return estimate

    async def load(self, estimate_id: str) -> LoadedEstimate:
        estimate = await self._get_estimate(estimate_id)

        result = await self.session.execute(
            select(EstimateItem)
            .options(selectinload(EstimateItem.materials))
            .where(EstimateItem.estimate_id == estimate_id)
            .order_by(EstimateItem.position_number)
        )
        items = result.scalars().all()

        material_ids = {m.material_id for item in items for m in item.materials}
        catalog: Dict[str, Material] = {}
        if material_ids:
            mat_result = await self.session.execute(select(Material).where(Material.id.in_(material_ids)))
            catalog = {m.id: m for m in mat_result.scalars().all()}

        rows = []
        for item in items:
            materials = []
            for line in item.materials:
                ref = catalog.get(line.material_id)
                materials.append({
                    "id": line.id,
                    "material_id": line.material_id,
                    "sku": ref.sku if ref else None,
                    "name": ref.name if ref else "",
                    "unit": ref.unit if ref else "",
                    "image": ref.image_url if ref else None,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                    "consumption": line.consumption,
                    "auto_calculate": line.auto_calculate,
                    "is_required": line.is_required,
                    "notes": line.notes,
                })
            rows.append({
                "id": item.id,
                "work_id": item.work_id,
                "code": item.code,
                "name": item.name,
                "description": item.description,
                "unit": item.unit,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "phase": item.phase,
                "section": item.section,
                "subsection": item.subsection,
                "materials": materials,
            })

        metadata = {
            "name": estimate.name,
            "project_id": estimate.project_id,
            "estimate_type": estimate.estimate_type,
            "status": estimate.status,
            "description": estimate.description,
            "estimate_date": estimate.estimate_date,
            "currency": estimate.currency,
        }
        return LoadedEstimate(
            id=estimate.id,
            metadata=metadata,
            tree=tree_from_rows(rows),
            store=OriginalPriceStore.from_dict(estimate.original_prices_json),
            current_coefficient=float(estimate.current_coefficient or 0),
            project_id=estimate.project_id,
            item_ids=[item.id for item in items],
        )

    async def save(
        self,
        payload: Mapping[str, Any],
        store: Optional[OriginalPriceStore] = None,
        current_coefficient: Optional[float] = None,
        estimate_id: Optional[str] = None,
    ) -> str:
        """
        Persist a save payload; creates the estimate when ``estimate_id`` is None.

        Runs inside the caller's transaction.
        """
        meta = metadata_from_payload(payload)
        if estimate_id is None:
            estimate = Estimate(
                id=str(uuid.uuid4()),
                tenant_id=self.tenant_id,
                name=meta["name"] or "Смета",
            )
            self.session.add(estimate)
        else:
            estimate = await self._get_estimate(estimate_id)

        estimate.name = meta["name"] or estimate.name
        estimate.project_id = meta["project_id"] or estimate.project_id
        estimate.estimate_type = meta["estimate_type"] or DEFAULT_ESTIMATE_METADATA["estimate_type"]
        estimate.status = meta["status"] or DEFAULT_ESTIMATE_METADATA["status"]
        estimate.description = meta["description"]
        estimate.estimate_date = _parse_date(meta["estimate_date"])
        estimate.currency = meta["currency"] or DEFAULT_ESTIMATE_METADATA["currency"]
        if store is not None:
            estimate.original_prices_json = store.to_dict()
        if current_coefficient is not None:
            estimate.current_coefficient = _dec(current_coefficient)
        await self.session.flush()

        existing_result = await self.session.execute(
            select(EstimateItem).where(EstimateItem.estimate_id == estimate.id)
        )
        existing = {item.id: item for item in existing_result.scalars().all()}

        payload_items = list(payload.get("items") or ())
        kept_ids = set(payload_item_ids(payload))
        removed_ids = [item_id for item_id in existing if item_id not in kept_ids]

        unknown_ids = kept_ids - set(existing)
        if unknown_ids:
            owned_elsewhere = set((await self.session.execute(
                select(EstimateItem.id).where(EstimateItem.id.in_(sorted(unknown_ids)))
            )).scalars().all())
            if owned_elsewhere:
                raise ForeignEstimateItemError(estimate.id, owned_elsewhere)

        if existing:
            await self.session.execute(
                delete(EstimateItemMaterial)
                .where(EstimateItemMaterial.estimate_item_id.in_(list(existing)))
                .execution_options(synchronize_session=False)
            )
        if removed_ids:
            await self.session.execute(
                delete(WorkCompletion)
                .where(WorkCompletion.estimate_item_id.in_(removed_ids))
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(delete(EstimateItem).where(EstimateItem.id.in_(removed_ids)))

        for position, row in enumerate(payload_items, start=1):
            item_id = str(row.get("id") or uuid.uuid4())
            item = existing.get(item_id)
            if item is None:
                item = EstimateItem(id=item_id, estimate_id=estimate.id, tenant_id=self.tenant_id)
                self.session.add(item)

            quantity = round2(row.get("quantity") or 0)
            unit_price = round2(row.get("unit_price") or 0)
            item.work_id = row.get("workId") or row.get("work_id")
            item.item_type = row.get("item_type") or "work"
            item.code = row.get("code")
            item.name = row.get("name") or ""
            item.description = row.get("description")
            item.unit = row.get("unit")
            item.quantity = _dec(quantity)
            item.unit_price = _dec(unit_price)
            item.final_price = _dec(quantity * unit_price)
            item.phase = row.get("phase")
            item.section = row.get("section")
            item.subsection = row.get("subsection")
            item.position_number = position
            await self.session.flush()

            for material_position, material in enumerate(row.get("materials") or (), start=1):
                material_quantity = round2(material.get("quantity") or 0)
                if not material.get("material_id") or material_quantity <= 0:
                    continue
                material_price = round2(material.get("unit_price") or 0)
                auto = material.get("auto_calculate", material.get("autoCalculate", True))
                self.session.add(EstimateItemMaterial(
                    estimate_item_id=item_id,
                    material_id=str(material["material_id"]),
                    quantity=_dec(material_quantity),
                    unit_price=_dec(material_price),
                    total=_dec(material_quantity * material_price),
                    consumption=Decimal(str(material.get("consumption", 1) or 0)),
                    auto_calculate=bool(auto),
                    is_required=material.get("is_required") is not False,
                    notes=material.get("notes") or None,
                    position_number=material_position,
                ))

        await self.session.flush()
        logger.info(
            "Estimate saved: %d items, %d removed", len(payload_items), len(removed_ids),
            extra={"estimate_id": estimate.id},
        )
        return estimate.id
