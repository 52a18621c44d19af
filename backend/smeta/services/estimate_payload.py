"""
Estimate payload — the persisted shape of an estimate.

This is the only place that knows about wire field names. Inside the model a
material has exactly one ``auto_calculate`` flag; legacy ``autoCalculate`` /
``consumption_coefficient`` keys are accepted when reading and never written.

Save rules:
  - materials without a catalog id or with a non-positive quantity are dropped;
  - zero-quantity work items are kept so the operator can see and fix them.
"""

import uuid
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

from smeta.config import DEFAULT_ESTIMATE_METADATA
from smeta.services.line_item_tree import EstimateTree, MaterialLine, WorkItem, round2


def _first(row: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None:
            return value
    return default


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _iso(value: Any) -> Optional[str]:
    if isinstance(value, date):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# Model → payload
# ---------------------------------------------------------------------------

def material_to_payload(material: MaterialLine) -> Dict[str, Any]:
    return {
        "material_id": material.material_id,
        "quantity": material.quantity,
        "unit_price": material.price,
        "consumption": material.consumption,
        "auto_calculate": material.auto_calculate,
        "is_required": material.is_required,
        "notes": material.notes or "",
    }


def work_item_to_payload(item: WorkItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "workId": item.work_id,
        "item_type": "work",
        "name": item.name,
        "code": item.code,
        "description": item.description,
        "unit": item.unit,
        "quantity": item.quantity,
        "unit_price": item.price,
        "final_price": item.total,
        "phase": item.phase,
        "section": item.section,
        "subsection": item.subsection,
        "materials": [
            material_to_payload(m)
            for m in item.materials
            if m.material_id and m.quantity > 0
        ],
    }


def build_save_payload(
    tree: EstimateTree, metadata: Mapping[str, Any], project_id: Optional[str] = None
) -> Dict[str, Any]:
    meta = {**DEFAULT_ESTIMATE_METADATA, **{k: v for k, v in metadata.items() if v is not None}}
    return {
        "name": meta.get("name") or f"Смета от {date.today().strftime('%d.%m.%Y')}",
        "projectId": project_id if project_id is not None else meta.get("project_id"),
        "estimateType": meta.get("estimate_type"),
        "status": meta.get("status"),
        "description": meta.get("description") or "",
        "estimateDate": _iso(meta.get("estimate_date")) or date.today().isoformat(),
        "currency": meta.get("currency"),
        "items": [work_item_to_payload(item) for item in tree.iter_work_items()],
    }


# ---------------------------------------------------------------------------
# Payload / stored rows → model
# ---------------------------------------------------------------------------

def material_from_row(row: Mapping[str, Any]) -> MaterialLine:
    quantity = round2(_float(row.get("quantity")))
    price = round2(_float(_first(row, "unit_price", "price")))
    material_id = _first(row, "material_id")
    return MaterialLine(
        id=str(_first(row, "id", default=None) or uuid.uuid4()),
        material_id=str(material_id) if material_id is not None else None,
        code=_first(row, "sku", "code", default="") or (f"M-{material_id}" if material_id else ""),
        name=_first(row, "material_name", "name", default=""),
        unit=_first(row, "unit", default=""),
        consumption=_float(_first(row, "consumption", "consumption_coefficient"), default=1.0),
        auto_calculate=bool(_first(row, "auto_calculate", "autoCalculate", default=True)),
        quantity=quantity,
        price=price,
        total=round2(quantity * price),
        is_required=row.get("is_required") is not False,
        notes=row.get("notes") or "",
        image=row.get("image"),
    )


def work_item_from_row(row: Mapping[str, Any]) -> WorkItem:
    quantity = round2(_float(row.get("quantity")))
    price = round2(_float(_first(row, "unit_price", "price")))
    work_id = _first(row, "workId", "work_id")
    return WorkItem(
        id=str(_first(row, "id", default=None) or uuid.uuid4()),
        work_id=str(work_id) if work_id is not None else None,
        code=row.get("code") or "",
        name=row.get("name") or "",
        unit=row.get("unit") or "",
        quantity=quantity,
        price=price,
        total=round2(quantity * price),
        phase=row.get("phase"),
        section=row.get("section"),
        subsection=row.get("subsection"),
        description=row.get("description"),
        materials=tuple(material_from_row(m) for m in row.get("materials") or ()),
    )


def tree_from_rows(rows: Iterable[Mapping[str, Any]]) -> EstimateTree:
    return EstimateTree.from_items(work_item_from_row(row) for row in rows)


def metadata_from_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "name": payload.get("name"),
        "project_id": _first(payload, "projectId", "project_id"),
        "estimate_type": _first(payload, "estimateType", "estimate_type"),
        "status": payload.get("status"),
        "description": payload.get("description"),
        "estimate_date": _first(payload, "estimateDate", "estimate_date"),
        "currency": payload.get("currency"),
    }


def payload_item_ids(payload: Mapping[str, Any]) -> List[str]:
    return [str(item["id"]) for item in payload.get("items") or () if item.get("id")]
