"""
AccumulationCalculator — year-to-date / previous / current split for KS-3.

Only acts of the same estimate, the same act type and the same calendar year
count, and cancelled acts never do. Line-level figures come from a single
aggregate query over the act-item history keyed by ``estimate_item_id``.
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, List

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from smeta.config import CANCELLED_STATUS
from smeta.models.orm_models import ActItem, CompletionAct
from smeta.services.line_item_tree import round2


@dataclass(frozen=True)
class PeriodTotals:
    total_amount_ytd: float
    prev_period_amount: float
    current_period_amount: float


@dataclass(frozen=True)
class ItemAccumulation:
    estimate_item_id: str
    quantity_ytd: float
    quantity_prev_period: float


class AccumulationCalculator:
    def __init__(self, session: AsyncSession, tenant_id: str):
        self.session = session
        self.tenant_id = tenant_id

    def _ledger_filter(self, act: CompletionAct) -> List:
        year_start = date(act.act_date.year, 1, 1)
        return [
            CompletionAct.tenant_id == self.tenant_id,
            CompletionAct.estimate_id == act.estimate_id,
            CompletionAct.act_type == act.act_type,
            CompletionAct.status != CANCELLED_STATUS,
            CompletionAct.act_date >= year_start,
            CompletionAct.act_date <= act.act_date,
        ]

    async def period_totals(self, act: CompletionAct) -> PeriodTotals:
        result = await self.session.execute(
            select(
                func.coalesce(func.sum(CompletionAct.total_amount), 0),
                func.coalesce(
                    func.sum(case((CompletionAct.id != act.id, CompletionAct.total_amount), else_=0)), 0
                ),
            ).where(*self._ledger_filter(act))
        )
        ytd, prev = result.one()
        return PeriodTotals(
            total_amount_ytd=round2(ytd),
            prev_period_amount=round2(prev),
            current_period_amount=round2(act.total_amount),
        )

    async def item_totals(self, act: CompletionAct) -> Dict[str, ItemAccumulation]:
        """Per estimate line of ``act``: quantity up to and before its act date."""
        lines_of_act = select(ActItem.estimate_item_id).where(ActItem.act_id == act.id)
        result = await self.session.execute(
            select(
                ActItem.estimate_item_id,
                func.coalesce(func.sum(ActItem.actual_quantity), 0).label("quantity_ytd"),
                func.coalesce(
                    func.sum(case((CompletionAct.act_date < act.act_date, ActItem.actual_quantity), else_=0)),
                    0,
                ).label("quantity_prev_period"),
            )
            .join(CompletionAct, ActItem.act_id == CompletionAct.id)
            .where(*self._ledger_filter(act), ActItem.estimate_item_id.in_(lines_of_act))
            .group_by(ActItem.estimate_item_id)
        )
        return {
            row.estimate_item_id: ItemAccumulation(
                estimate_item_id=row.estimate_item_id,
                quantity_ytd=round2(row.quantity_ytd),
                quantity_prev_period=round2(row.quantity_prev_period),
            )
            for row in result.all()
        }
