"""
ActLedger — converts completion records into frozen completion acts.

Two independent ledgers share every completion record: a record consumed by a
client act is still available to a specialist act and vice versa, but never
to a second act of the same type. Each record keeps one back-reference per
act type (``last_client_act_id`` / ``last_specialist_act_id``); eligibility
for type T only looks at T's column.

All methods run inside the caller's transaction. ``generate`` is meant to be
driven through ``smeta.db.run_in_transaction`` so that a failure at any step
rolls back the act, its items, the back-references and the act number
sequence together.
"""

import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from smeta.config import (
    ACT_NUMBER_PADDING,
    ACT_NUMBER_PREFIXES,
    ACT_STATUSES,
    ACT_TYPES,
    NO_SECTION_TITLE,
)
from smeta.db import advisory_xact_lock
from smeta.errors import (
    ActNotFoundError,
    EstimateNotFoundError,
    InvalidActStatusError,
    InvalidActTypeError,
    NoCompletedWorksError,
)
from smeta.models.orm_models import (
    ActItem,
    ActNumberSequence,
    ActSignatory,
    CompletionAct,
    Estimate,
    EstimateItem,
    Work,
    WorkCompletion,
)
from smeta.services.line_item_tree import round2

logger = logging.getLogger("smeta-ledger")

_TRAILING_NUMBER = re.compile(r"-(\d+)$")

# Per-type back-reference column on work_completions
_BACKREF_COLUMNS = {
    "client": WorkCompletion.last_client_act_id,
    "specialist": WorkCompletion.last_specialist_act_id,
}

# Fields an operator may edit on an existing act (KS-2/KS-3 header blocks)
ACT_DETAIL_FIELDS = (
    "contractor_name", "contractor_inn", "contractor_kpp", "contractor_address",
    "customer_name", "customer_inn", "customer_kpp", "customer_address",
    "contract_number", "contract_date", "contract_subject",
    "construction_object", "construction_address", "notes",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dec(value: Any) -> Decimal:
    return Decimal(str(round2(value or 0)))


def validate_act_type(act_type: str) -> str:
    if act_type not in ACT_TYPES:
        raise InvalidActTypeError(act_type)
    return act_type


def validate_act_status(status: str) -> str:
    if status not in ACT_STATUSES:
        raise InvalidActStatusError(status)
    return status


def format_act_number(act_type: str, year: int, number: int) -> str:
    """``ACT-CL-2025-001`` / ``ACT-SP-2025-001``."""
    prefix = ACT_NUMBER_PREFIXES[validate_act_type(act_type)]
    return f"{prefix}-{year}-{str(number).zfill(ACT_NUMBER_PADDING)}"


def parse_act_number(act_number: Optional[str]) -> Optional[int]:
    """Trailing integer of an act number, or None if there is none."""
    match = _TRAILING_NUMBER.search(act_number or "")
    return int(match.group(1)) if match else None


def group_items_by_section(items: Iterable[Any]) -> List[Dict[str, Any]]:
    """
    Group act items for display, keeping first-seen section order.

    Accepts ORM rows or plain dicts; items without a section land under
    "Без раздела".
    """
    sections: Dict[str, Dict[str, Any]] = {}
    for item in items:
        if isinstance(item, Mapping):
            section = item.get("section")
            total = item.get("total_price")
        else:
            section = item.section
            total = item.total_price
        title = section or NO_SECTION_TITLE
        group = sections.setdefault(title, {"section": title, "items": [], "section_total": 0.0})
        group["items"].append(item)
        group["section_total"] = round2(group["section_total"] + float(total or 0))
    return list(sections.values())


class ActLedger:
    def __init__(self, session: AsyncSession, tenant_id: str, user_id: Optional[str] = None):
        self.session = session
        self.tenant_id = tenant_id
        self.user_id = user_id

    # ------------------------------------------------------------------
    # Act numbers
    # ------------------------------------------------------------------

    async def generate_act_number(self, act_type: str, year: int) -> str:
        """
        Allocate the next number for (tenant, type, year).

        The sequence row is locked for update and seeded from the highest
        number already issued the first time a year is used. It only ever
        grows, so numbers of deleted acts are never handed out again.
        """
        validate_act_type(act_type)
        await advisory_xact_lock(self.session, f"act-number:{self.tenant_id}:{act_type}:{year}")

        result = await self.session.execute(
            select(ActNumberSequence)
            .where(
                ActNumberSequence.tenant_id == self.tenant_id,
                ActNumberSequence.act_type == act_type,
                ActNumberSequence.year == year,
            )
            .with_for_update()
        )
        sequence = result.scalar_one_or_none()
        if sequence is None:
            prefix = f"{ACT_NUMBER_PREFIXES[act_type]}-{year}-"
            existing = await self.session.execute(
                select(CompletionAct.act_number).where(
                    CompletionAct.tenant_id == self.tenant_id,
                    CompletionAct.act_type == act_type,
                    CompletionAct.act_number.like(f"{prefix}%"),
                )
            )
            last = max((parse_act_number(n) or 0 for n in existing.scalars()), default=0)
            sequence = ActNumberSequence(
                tenant_id=self.tenant_id, act_type=act_type, year=year, last_number=last
            )
            self.session.add(sequence)

        sequence.last_number += 1
        await self.session.flush()
        return format_act_number(act_type, year, sequence.last_number)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _eligible_rows(self, estimate_id: str, act_type: str) -> Sequence[Any]:
        if act_type == "client":
            unit_price = func.coalesce(EstimateItem.unit_price, 0)
        else:
            # Specialists are paid from the catalog base price
            unit_price = func.coalesce(Work.base_price, EstimateItem.unit_price, 0)

        stmt = (
            select(
                WorkCompletion.id.label("completion_id"),
                EstimateItem.id.label("estimate_item_id"),
                EstimateItem.work_id,
                func.coalesce(Work.code, EstimateItem.code).label("work_code"),
                EstimateItem.name.label("work_name"),
                EstimateItem.section,
                EstimateItem.subsection,
                EstimateItem.unit,
                EstimateItem.quantity.label("planned_quantity"),
                WorkCompletion.actual_quantity,
                unit_price.label("unit_price"),
            )
            .join(EstimateItem, WorkCompletion.estimate_item_id == EstimateItem.id)
            .outerjoin(
                Work,
                and_(
                    EstimateItem.work_id == Work.id,
                    or_(Work.tenant_id.is_(None), Work.tenant_id == self.tenant_id),
                ),
            )
            .where(
                WorkCompletion.estimate_id == estimate_id,
                WorkCompletion.tenant_id == self.tenant_id,
                WorkCompletion.completed.is_(True),
                WorkCompletion.actual_quantity > 0,
                _BACKREF_COLUMNS[act_type].is_(None),
            )
            .order_by(
                EstimateItem.section.asc().nulls_last(),
                EstimateItem.subsection.asc().nulls_last(),
                EstimateItem.position_number,
            )
            .with_for_update(of=WorkCompletion)
        )
        result = await self.session.execute(stmt)
        return result.all()

    async def generate(
        self,
        estimate_id: str,
        act_type: str,
        *,
        act_date: Optional[date] = None,
        period_from: Optional[date] = None,
        period_to: Optional[date] = None,
        status: str = "draft",
        project_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CompletionAct:
        """
        Build one act of ``act_type`` from every eligible completion record.

        Raises ``NoCompletedWorksError`` when nothing is eligible; the caller's
        transaction then rolls back and no number is consumed.
        """
        validate_act_type(act_type)
        validate_act_status(status)
        act_date = act_date or date.today()
        log_extra = {"estimate_id": estimate_id, "act_type": act_type}

        estimate = (
            await self.session.execute(
                select(Estimate).where(Estimate.id == estimate_id, Estimate.tenant_id == self.tenant_id)
            )
        ).scalar_one_or_none()
        if estimate is None:
            raise EstimateNotFoundError(estimate_id)

        # Two concurrent generations must not read the same available records
        await advisory_xact_lock(self.session, f"acts:{estimate_id}:{act_type}")

        rows = await self._eligible_rows(estimate_id, act_type)
        logger.info("Found %d eligible completion records", len(rows), extra=log_extra)
        if not rows:
            logger.warning("No completed works to include, rolling back", extra=log_extra)
            raise NoCompletedWorksError(estimate_id, act_type)

        items: List[ActItem] = []
        total_amount = 0.0
        total_quantity = 0.0
        for position, row in enumerate(rows, start=1):
            quantity = round2(row.actual_quantity)
            price = round2(row.unit_price)
            line_total = round2(quantity * price)
            total_amount += line_total
            total_quantity += quantity
            items.append(ActItem(
                tenant_id=self.tenant_id,
                estimate_item_id=row.estimate_item_id,
                work_id=row.work_id,
                work_code=row.work_code,
                work_name=row.work_name,
                section=row.section,
                subsection=row.subsection,
                unit=row.unit,
                planned_quantity=_dec(row.planned_quantity),
                actual_quantity=_dec(quantity),
                unit_price=_dec(price),
                total_price=_dec(line_total),
                position_number=position,
            ))

        act_number = await self.generate_act_number(act_type, act_date.year)
        now = _utcnow()
        act = CompletionAct(
            tenant_id=self.tenant_id,
            estimate_id=estimate_id,
            project_id=project_id or estimate.project_id,
            act_type=act_type,
            act_number=act_number,
            act_date=act_date,
            period_from=period_from,
            period_to=period_to or date.today(),
            total_amount=_dec(total_amount),
            total_quantity=_dec(total_quantity),
            work_count=len(items),
            status=status,
            notes=notes,
            created_by=self.user_id,
            updated_by=self.user_id,
            created_at=now,
            updated_at=now,
            items=items,
            signatories=[],
        )
        self.session.add(act)
        await self.session.flush()

        await self.session.execute(
            update(WorkCompletion)
            .where(WorkCompletion.id.in_([row.completion_id for row in rows]))
            .values({
                _BACKREF_COLUMNS[act_type]: act.id,
                WorkCompletion.last_act_id: act.id,
                WorkCompletion.updated_by: self.user_id,
                WorkCompletion.updated_at: now,
            })
            .execution_options(synchronize_session=False)
        )

        logger.info(
            "Act %s generated: %d works, amount %.2f, quantity %.2f",
            act_number, len(items), float(act.total_amount), float(act.total_quantity),
            extra={**log_extra, "act_id": act.id},
        )
        return act

    # ------------------------------------------------------------------
    # Act queries and updates
    # ------------------------------------------------------------------

    async def list_acts(self, estimate_id: str, act_type: Optional[str] = None) -> List[CompletionAct]:
        stmt = select(CompletionAct).where(
            CompletionAct.estimate_id == estimate_id,
            CompletionAct.tenant_id == self.tenant_id,
        )
        if act_type:
            stmt = stmt.where(CompletionAct.act_type == validate_act_type(act_type))
        stmt = stmt.order_by(CompletionAct.act_date.desc(), CompletionAct.created_at.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_act(self, act_id: str) -> CompletionAct:
        result = await self.session.execute(
            select(CompletionAct)
            .options(selectinload(CompletionAct.items), selectinload(CompletionAct.signatories))
            .where(CompletionAct.id == act_id, CompletionAct.tenant_id == self.tenant_id)
        )
        act = result.scalar_one_or_none()
        if act is None:
            raise ActNotFoundError(act_id)
        return act

    async def delete_act(self, act_id: str) -> None:
        """
        Delete an act with its items and signatories.

        Its records stay consumed; ``release_records`` frees them explicitly.
        """
        act = await self.get_act(act_id)
        await self.session.execute(delete(ActItem).where(ActItem.act_id == act.id))
        await self.session.execute(delete(ActSignatory).where(ActSignatory.act_id == act.id))
        await self.session.execute(delete(CompletionAct).where(CompletionAct.id == act.id))
        logger.info(
            "Act %s deleted", act.act_number,
            extra={"act_id": act.id, "estimate_id": act.estimate_id, "act_type": act.act_type},
        )

    async def update_status(self, act_id: str, status: str) -> CompletionAct:
        validate_act_status(status)
        act = await self.get_act(act_id)
        act.status = status
        act.updated_by = self.user_id
        act.updated_at = _utcnow()
        await self.session.flush()
        logger.info("Act %s status -> %s", act.act_number, status, extra={"act_id": act.id})
        return act

    async def release_records(self, act_id: str) -> int:
        """
        Make the records consumed by ``act_id`` eligible again for its type.

        Works for deleted acts too: act ids are unique, so clearing whichever
        per-type column holds the id is enough. ``last_act_id`` falls back to
        the other type's act, if any. Returns the number of records released.
        """
        released = 0
        for column in _BACKREF_COLUMNS.values():
            result = await self.session.execute(
                update(WorkCompletion)
                .where(WorkCompletion.tenant_id == self.tenant_id, column == act_id)
                .values({column: None, WorkCompletion.updated_by: self.user_id})
                .execution_options(synchronize_session=False)
            )
            released += result.rowcount or 0

        await self.session.execute(
            update(WorkCompletion)
            .where(WorkCompletion.tenant_id == self.tenant_id, WorkCompletion.last_act_id == act_id)
            .values({
                WorkCompletion.last_act_id: func.coalesce(
                    WorkCompletion.last_client_act_id, WorkCompletion.last_specialist_act_id
                )
            })
            .execution_options(synchronize_session=False)
        )
        logger.info("Released %d completion records", released, extra={"act_id": act_id})
        return released

    async def update_details(self, act_id: str, **details: Any) -> CompletionAct:
        """Overwrite header fields; None leaves a field as it is."""
        unknown = set(details) - set(ACT_DETAIL_FIELDS)
        if unknown:
            raise ValueError(f"Unknown act fields: {', '.join(sorted(unknown))}")
        act = await self.get_act(act_id)
        for name, value in details.items():
            if value is not None:
                setattr(act, name, value)
        act.updated_by = self.user_id
        act.updated_at = _utcnow()
        await self.session.flush()
        return act

    async def update_signatories(
        self, act_id: str, signatories: Iterable[Mapping[str, Any]]
    ) -> List[ActSignatory]:
        """Replace the act's signatory list."""
        act = await self.get_act(act_id)
        await self.session.execute(delete(ActSignatory).where(ActSignatory.act_id == act.id))
        created = [
            ActSignatory(
                act_id=act.id,
                tenant_id=self.tenant_id,
                role=s["role"],
                full_name=s["full_name"],
                position=s.get("position"),
                signed_at=s.get("signed_at"),
            )
            for s in signatories
        ]
        self.session.add_all(created)
        await self.session.flush()
        return created

    # ------------------------------------------------------------------
    # Completion records
    # ------------------------------------------------------------------

    async def _get_completion(self, estimate_id: str, estimate_item_id: str) -> Optional[WorkCompletion]:
        result = await self.session.execute(
            select(WorkCompletion).where(
                WorkCompletion.estimate_id == estimate_id,
                WorkCompletion.estimate_item_id == estimate_item_id,
                WorkCompletion.tenant_id == self.tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_completion(
        self,
        estimate_id: str,
        estimate_item_id: str,
        completed: bool,
        actual_quantity: Any = 0,
        actual_total: Any = None,
        notes: Optional[str] = None,
    ) -> WorkCompletion:
        """Insert or update one record; ``completion_date`` is stamped whenever it is marked done."""
        now = _utcnow()
        record = await self._get_completion(estimate_id, estimate_item_id)
        if record is None:
            record = WorkCompletion(
                tenant_id=self.tenant_id,
                estimate_id=estimate_id,
                estimate_item_id=estimate_item_id,
                created_by=self.user_id,
                created_at=now,
            )
            self.session.add(record)

        record.completed = bool(completed)
        record.actual_quantity = _dec(actual_quantity)
        record.actual_total = _dec(actual_total) if actual_total is not None else None
        record.notes = notes
        record.updated_by = self.user_id
        record.updated_at = now
        if completed:
            record.completion_date = now
        await self.session.flush()
        return record

    async def batch_upsert_completions(
        self, estimate_id: str, records: Iterable[Mapping[str, Any]]
    ) -> List[WorkCompletion]:
        saved = []
        for data in records:
            saved.append(await self.upsert_completion(
                estimate_id,
                data["estimate_item_id"],
                completed=data.get("completed", False),
                actual_quantity=data.get("actual_quantity", 0),
                actual_total=data.get("actual_total"),
                notes=data.get("notes"),
            ))
        logger.info("Upserted %d completion records", len(saved), extra={"estimate_id": estimate_id})
        return saved

    async def list_completions(self, estimate_id: str) -> List[Dict[str, Any]]:
        """Records of an estimate with the number and type of their latest act."""
        last_act = aliased(CompletionAct)
        result = await self.session.execute(
            select(WorkCompletion, last_act.act_number, last_act.act_type)
            .outerjoin(last_act, WorkCompletion.last_act_id == last_act.id)
            .where(
                WorkCompletion.estimate_id == estimate_id,
                WorkCompletion.tenant_id == self.tenant_id,
            )
            .order_by(WorkCompletion.created_at)
        )
        return [
            {
                "id": record.id,
                "estimate_item_id": record.estimate_item_id,
                "completed": record.completed,
                "actual_quantity": float(record.actual_quantity or 0),
                "actual_total": float(record.actual_total) if record.actual_total is not None else None,
                "completion_date": record.completion_date,
                "notes": record.notes,
                "last_act_id": record.last_act_id,
                "last_client_act_id": record.last_client_act_id,
                "last_specialist_act_id": record.last_specialist_act_id,
                "last_act_number": act_number,
                "last_act_type": act_type,
            }
            for record, act_number, act_type in result.all()
        ]

    async def delete_completion(self, estimate_id: str, estimate_item_id: str) -> bool:
        result = await self.session.execute(
            delete(WorkCompletion).where(
                WorkCompletion.estimate_id == estimate_id,
                WorkCompletion.estimate_item_id == estimate_item_id,
                WorkCompletion.tenant_id == self.tenant_id,
            )
        )
        return bool(result.rowcount)
