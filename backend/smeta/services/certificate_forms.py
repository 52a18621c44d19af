"""
Certificate form data — KS-2 (act of acceptance) and KS-3 (cost statement).

Builds plain dicts from a stored act; header blocks prefer the act's own
fields and fall back to the project card. KS-3 extends KS-2 with the
accumulation tiers from ``AccumulationCalculator``.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from smeta.config import KS2_OKUD, KS3_OKUD, SIGNATORY_ORDER
from smeta.models.orm_models import ActSignatory, CompletionAct, Estimate, Project
from smeta.services.accumulation import AccumulationCalculator, ItemAccumulation, PeriodTotals
from smeta.services.act_ledger import ActLedger
from smeta.services.line_item_tree import round2


def _pick(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return ""


def order_signatories(signatories: List[ActSignatory]) -> List[Dict[str, Any]]:
    ranked = sorted(signatories, key=lambda s: SIGNATORY_ORDER.get(s.role, len(SIGNATORY_ORDER) + 1))
    return [
        {"role": s.role, "full_name": s.full_name, "position": s.position, "signed_at": s.signed_at}
        for s in ranked
    ]


def ks2_data(act: CompletionAct, project: Optional[Project] = None, estimate_name: Optional[str] = None) -> Dict[str, Any]:
    p_client = project.client if project else None
    p_contractor = project.contractor if project else None
    p_object = (project.object_name or project.name) if project else None
    return {
        "okud": KS2_OKUD,
        "form_type": "КС-2",
        "act_number": act.act_number,
        "act_date": act.act_date,
        "act_type": act.act_type,
        "estimate_name": estimate_name,
        "contractor": {
            "name": _pick(act.contractor_name, p_contractor),
            "inn": act.contractor_inn or "",
            "kpp": act.contractor_kpp or "",
            "address": act.contractor_address or "",
        },
        "customer": {
            "name": _pick(act.customer_name, p_client),
            "inn": act.customer_inn or "",
            "kpp": act.customer_kpp or "",
            "address": act.customer_address or "",
        },
        "contract": {
            "number": _pick(act.contract_number, project.contract_number if project else None),
            "date": act.contract_date,
            "subject": act.contract_subject or "",
        },
        "construction_object": {
            "name": _pick(act.construction_object, p_object),
            "address": _pick(act.construction_address, project.address if project else None),
        },
        "period": {"from": act.period_from, "to": act.period_to},
        "works": [
            {
                "position": item.position_number,
                "code": item.work_code,
                "name": item.work_name,
                "unit": item.unit,
                "planned_quantity": float(item.planned_quantity or 0),
                "actual_quantity": float(item.actual_quantity or 0),
                "price": float(item.unit_price or 0),
                "total_price": float(item.total_price or 0),
            }
            for item in act.items
        ],
        "totals": {
            "amount": float(act.total_amount or 0),
            "quantity": float(act.total_quantity or 0),
            "work_count": act.work_count,
        },
        "signatories": order_signatories(act.signatories),
        "notes": act.notes or "",
    }


def ks3_data(
    ks2: Dict[str, Any],
    act: CompletionAct,
    period: PeriodTotals,
    lines: Dict[str, ItemAccumulation],
) -> Dict[str, Any]:
    works = []
    for item in act.items:
        acc = lines.get(item.estimate_item_id)
        quantity_ytd = acc.quantity_ytd if acc else 0.0
        quantity_prev = acc.quantity_prev_period if acc else 0.0
        price = float(item.unit_price or 0)
        works.append({
            "position": item.position_number,
            "code": item.work_code,
            "name": item.work_name,
            "unit": item.unit,
            "planned_quantity": float(item.planned_quantity or 0),
            "quantity_ytd": quantity_ytd,
            "quantity_prev_period": quantity_prev,
            "quantity_current": float(item.actual_quantity or 0),
            "price": price,
            "total_price_ytd": round2(quantity_ytd * price),
            "total_price_prev_period": round2(quantity_prev * price),
            "total_price_current": float(item.total_price or 0),
        })
    return {
        **ks2,
        "okud": KS3_OKUD,
        "form_type": "КС-3",
        "works": works,
        "totals": {
            "amount_ytd": period.total_amount_ytd,
            "amount_prev_period": period.prev_period_amount,
            "amount_current": period.current_period_amount,
            "work_count": act.work_count,
        },
    }


async def _load(session: AsyncSession, tenant_id: str, act_id: str):
    act = await ActLedger(session, tenant_id).get_act(act_id)
    project = None
    if act.project_id:
        project = (
            await session.execute(select(Project).where(Project.id == act.project_id))
        ).scalar_one_or_none()
    estimate_name = (
        await session.execute(select(Estimate.name).where(Estimate.id == act.estimate_id))
    ).scalar_one_or_none()
    return act, project, estimate_name


async def build_ks2(session: AsyncSession, tenant_id: str, act_id: str) -> Dict[str, Any]:
    act, project, estimate_name = await _load(session, tenant_id, act_id)
    return ks2_data(act, project, estimate_name)


async def build_ks3(session: AsyncSession, tenant_id: str, act_id: str) -> Dict[str, Any]:
    act, project, estimate_name = await _load(session, tenant_id, act_id)
    calculator = AccumulationCalculator(session, tenant_id)
    period = await calculator.period_totals(act)
    lines = await calculator.item_totals(act)
    return ks3_data(ks2_data(act, project, estimate_name), act, period, lines)
