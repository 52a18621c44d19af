"""
LineItemTree — in-memory hierarchical estimate model.

Estimate → Section[] → WorkItem[] → Material[]

Every node is a frozen dataclass holding its children in tuples. A mutation
rebuilds only the path from the root to the touched node and reuses every
other subtree as-is, so callers can detect change with ``is`` and memoize
derived views (sorted lists, totals) on node identity.

Numeric policy: every derived quantity and amount is rounded to 2 decimals
(half-up) at the moment it is computed, never at display time, so persisted
totals are exact sums of their rounded parts.

Malformed numeric input (negative, NaN, non-numeric) is a no-op: the method
returns the very same tree object instead of raising.
"""

import math
import re
import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence, Tuple

from smeta.config import DEFAULT_PHASE, DEFAULT_SECTION_CODE
from smeta.services.catalog import CatalogMaterial, CatalogWork, WorkMaterialNorm
from smeta.services.sort_engine import compare_sections, compare_work_items, find_insert_position

_CENT = Decimal("0.01")
_CODE_SPLIT = re.compile(r"[-–]")


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

def round2(value: Any) -> float:
    """Round half-up to 2 decimals using the shortest decimal repr of ``value``."""
    if value is None:
        return 0.0
    return float(Decimal(repr(float(value))).quantize(_CENT, rounding=ROUND_HALF_UP))


def is_empty_input(value: Any) -> bool:
    """The "field cleared" sentinel: None or a blank string (distinct from 0)."""
    return value is None or (isinstance(value, str) and not value.strip())


def parse_amount(value: Any) -> Optional[float]:
    """
    Parse a committed numeric edit.

    Accepts numbers and strings with either ``.`` or ``,`` as decimal mark.
    Returns None for anything that must be ignored: negatives, NaN/inf,
    booleans and non-numeric text.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(Decimal(value.strip().replace(",", ".").replace(" ", "")))
        except (InvalidOperation, ValueError):
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number) or number < 0:
        return None
    return number


def section_code_for(code: Optional[str]) -> str:
    if not code:
        return DEFAULT_SECTION_CODE
    return _CODE_SPLIT.split(code, 1)[0] or DEFAULT_SECTION_CODE


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Tree nodes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MaterialLine:
    id: str
    material_id: Optional[str]
    code: str
    name: str
    unit: str = ""
    consumption: float = 1.0
    auto_calculate: bool = True
    quantity: float = 0.0
    price: float = 0.0
    total: float = 0.0
    is_required: bool = True
    notes: str = ""
    image: Optional[str] = None

    def with_price(self, price: float) -> "MaterialLine":
        return replace(self, price=price, total=round2(self.quantity * price))

    def with_quantity(self, quantity: float) -> "MaterialLine":
        return replace(self, quantity=quantity, total=round2(quantity * self.price))

    def follow_work_quantity(self, work_quantity: float) -> "MaterialLine":
        """Cascade from the owning work item; manual lines only re-total."""
        if self.auto_calculate:
            return self.with_quantity(round2(work_quantity * self.consumption))
        return self.with_quantity(self.quantity)


@dataclass(frozen=True)
class WorkItem:
    id: str
    work_id: Optional[str]
    code: str
    name: str
    unit: str = ""
    quantity: float = 0.0
    price: float = 0.0
    total: float = 0.0
    phase: Optional[str] = None
    section: Optional[str] = None
    subsection: Optional[str] = None
    description: Optional[str] = None
    materials: Tuple[MaterialLine, ...] = ()

    @property
    def materials_total(self) -> float:
        return round2(sum(m.total for m in self.materials))

    def with_price(self, price: float) -> "WorkItem":
        return replace(self, price=price, total=round2(self.quantity * price))

    def with_materials(self, materials: Iterable[MaterialLine]) -> "WorkItem":
        return replace(self, materials=tuple(materials))


@dataclass(frozen=True)
class Section:
    """
    Materialized grouping of work items by phase.

    ``subtotal`` covers work amounts and material amounts alike; the split is
    kept in ``works_total`` / ``materials_total``.
    """
    title: str
    code: str
    items: Tuple[WorkItem, ...] = ()
    works_total: float = 0.0
    materials_total: float = 0.0
    subtotal: float = 0.0

    @classmethod
    def build(cls, title: str, code: str, items: Sequence[WorkItem]) -> "Section":
        items = tuple(items)
        works = round2(sum(i.total for i in items))
        materials = round2(sum(i.materials_total for i in items))
        return cls(
            title=title,
            code=code,
            items=items,
            works_total=works,
            materials_total=materials,
            subtotal=round2(works + materials),
        )

    def with_items(self, items: Sequence[WorkItem]) -> "Section":
        return Section.build(self.title, self.code, items)

    # SortEngine reads sections through the same attribute names as items
    @property
    def phase(self) -> str:
        return self.title


def _phase_of(phase: Optional[str]) -> str:
    return phase or DEFAULT_PHASE


@dataclass(frozen=True)
class EstimateTree:
    sections: Tuple[Section, ...] = field(default_factory=tuple)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_items(cls, items: Iterable[WorkItem]) -> "EstimateTree":
        """Group loaded items into sections by phase and sort both levels."""
        tree = cls()
        for item in items:
            tree = tree.insert_item(item)
        return tree

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def iter_work_items(self) -> Iterator[WorkItem]:
        for section in self.sections:
            yield from section.items

    def locate(self, item_id: str) -> Optional[Tuple[int, int]]:
        for si, section in enumerate(self.sections):
            for ii, item in enumerate(section.items):
                if item.id == item_id:
                    return si, ii
        return None

    @property
    def works_total(self) -> float:
        return round2(sum(s.works_total for s in self.sections))

    @property
    def materials_total(self) -> float:
        return round2(sum(s.materials_total for s in self.sections))

    @property
    def total(self) -> float:
        return round2(sum(s.subtotal for s in self.sections))

    # ------------------------------------------------------------------
    # Structural helpers (copy the path, share the rest)
    # ------------------------------------------------------------------

    def _with_section(self, si: int, section: Optional[Section]) -> "EstimateTree":
        sections = list(self.sections)
        if section is None or not section.items:
            del sections[si]
        else:
            sections[si] = section
        return EstimateTree(tuple(sections))

    def _update_item(self, si: int, ii: int, fn: Callable[[WorkItem], WorkItem]) -> "EstimateTree":
        section = self.sections[si]
        item = section.items[ii]
        updated = fn(item)
        if updated is item:
            return self
        items = list(section.items)
        items[ii] = updated
        return self._with_section(si, section.with_items(items))

    def _update_material(
        self, si: int, ii: int, mi: int, fn: Callable[[MaterialLine], MaterialLine]
    ) -> "EstimateTree":
        def _apply(item: WorkItem) -> WorkItem:
            material = item.materials[mi]
            updated = fn(material)
            if updated is material:
                return item
            materials = list(item.materials)
            materials[mi] = updated
            return item.with_materials(materials)

        return self._update_item(si, ii, _apply)

    # ------------------------------------------------------------------
    # Work items
    # ------------------------------------------------------------------

    def insert_item(self, item: WorkItem) -> "EstimateTree":
        """Place ``item`` in its phase section at the sort-preserving position."""
        title = _phase_of(item.phase)
        for si, section in enumerate(self.sections):
            if section.title == title:
                items = list(section.items)
                items.insert(find_insert_position(items, item), item)
                return self._with_section(si, section.with_items(items))

        new_section = Section.build(title, section_code_for(item.code), [item])
        sections = list(self.sections)
        sections.insert(find_insert_position(sections, new_section, compare=compare_sections), new_section)
        return EstimateTree(tuple(sections))

    def insert_work(
        self,
        work: CatalogWork,
        materials: Sequence[WorkMaterialNorm] = (),
        item_id: Optional[str] = None,
    ) -> "EstimateTree":
        """Add a catalog work with its material norms at quantity 0."""
        default_quantity = 0.0
        price = round2(work.base_price or 0)
        lines = [
            MaterialLine(
                id=_new_id(),
                material_id=norm.material.id,
                code=norm.material.sku or f"M-{norm.material.id}",
                name=norm.material.name,
                unit=norm.material.unit or "",
                consumption=float(norm.consumption),
                auto_calculate=True,
                is_required=norm.is_required,
                image=norm.material.image,
            ).with_price(round2(norm.material.price or 0)).follow_work_quantity(default_quantity)
            for norm in materials
        ]
        item = WorkItem(
            id=item_id or _new_id(),
            work_id=work.id,
            code=work.code or "",
            name=work.name,
            unit=work.unit or "",
            quantity=default_quantity,
            price=price,
            total=round2(default_quantity * price),
            phase=work.phase,
            section=work.section,
            subsection=work.subsection,
            materials=tuple(lines),
        )
        return self.insert_item(item)

    def set_work_quantity(self, si: int, ii: int, value: Any) -> "EstimateTree":
        if is_empty_input(value):
            quantity = 0.0
        else:
            quantity = parse_amount(value)
            if quantity is None:
                return self

        def _apply(item: WorkItem) -> WorkItem:
            return replace(
                item,
                quantity=quantity,
                total=round2(quantity * item.price),
                materials=tuple(m.follow_work_quantity(quantity) for m in item.materials),
            )

        return self._update_item(si, ii, _apply)

    def set_work_price(self, si: int, ii: int, value: Any) -> "EstimateTree":
        price = parse_amount(value)
        if price is None:
            return self
        return self._update_item(si, ii, lambda item: item.with_price(round2(price)))

    def delete_work(self, si: int, ii: int) -> "EstimateTree":
        section = self.sections[si]
        items = list(section.items)
        del items[ii]
        return self._with_section(si, section.with_items(items))

    def map_work_items(self, fn: Callable[[WorkItem], WorkItem]) -> "EstimateTree":
        """Apply ``fn`` to every work item; untouched sections are shared."""
        sections = []
        changed = False
        for section in self.sections:
            items = [fn(item) for item in section.items]
            if any(new is not old for new, old in zip(items, section.items)):
                sections.append(section.with_items(items))
                changed = True
            else:
                sections.append(section)
        return EstimateTree(tuple(sections)) if changed else self

    # ------------------------------------------------------------------
    # Materials
    # ------------------------------------------------------------------

    def add_material(
        self,
        si: int,
        ii: int,
        material: CatalogMaterial,
        consumption: Any = 1.0,
        auto_calculate: bool = True,
    ) -> "EstimateTree":
        coefficient = parse_amount(consumption)
        if coefficient is None:
            return self

        def _apply(item: WorkItem) -> WorkItem:
            line = MaterialLine(
                id=_new_id(),
                material_id=material.id,
                code=material.sku or f"M-{material.id}",
                name=material.name,
                unit=material.unit or "",
                consumption=coefficient,
                auto_calculate=auto_calculate,
                # A manual line starts at one consumption's worth
                quantity=0.0 if auto_calculate else round2(coefficient),
                image=material.image,
            ).with_price(round2(material.price or 0)).follow_work_quantity(item.quantity)
            return item.with_materials(item.materials + (line,))

        return self._update_item(si, ii, _apply)

    def replace_material(self, si: int, ii: int, mi: int, material: CatalogMaterial) -> "EstimateTree":
        """Swap the catalog material, keeping quantity, consumption and mode."""
        return self._update_material(
            si, ii, mi,
            lambda line: replace(
                line,
                id=_new_id(),
                material_id=material.id,
                code=material.sku or f"M-{material.id}",
                name=material.name,
                unit=material.unit or "",
                image=material.image,
            ).with_price(round2(material.price or 0)),
        )

    def set_material_quantity(self, si: int, ii: int, mi: int, value: Any) -> "EstimateTree":
        """Manual override: the line stops following its work item."""
        quantity = parse_amount(value)
        if quantity is None:
            return self
        return self._update_material(
            si, ii, mi,
            lambda line: replace(line, auto_calculate=False).with_quantity(round2(quantity)),
        )

    def set_material_price(self, si: int, ii: int, mi: int, value: Any) -> "EstimateTree":
        price = parse_amount(value)
        if price is None:
            return self
        return self._update_material(si, ii, mi, lambda line: line.with_price(round2(price)))

    def set_material_consumption(self, si: int, ii: int, mi: int, value: Any) -> "EstimateTree":
        consumption = parse_amount(value)
        if consumption is None:
            return self
        work_quantity = self.sections[si].items[ii].quantity
        return self._update_material(
            si, ii, mi,
            lambda line: replace(line, consumption=consumption).follow_work_quantity(work_quantity),
        )

    def delete_material(self, si: int, ii: int, mi: int) -> "EstimateTree":
        def _apply(item: WorkItem) -> WorkItem:
            materials = list(item.materials)
            del materials[mi]
            return item.with_materials(materials)

        return self._update_item(si, ii, _apply)
