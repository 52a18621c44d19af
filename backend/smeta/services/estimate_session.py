"""
EstimateSession — one operator's editing state for an estimate.

Holds the current immutable tree together with the baseline price store, the
coefficient engine and the pending edit buffer. Every mutation swaps
``self.tree`` for the new root; ``version`` increments only when the root
actually changed, which is what save/dirty tracking keys on.
"""

import logging
from typing import Any, Optional, Sequence

from smeta.services.catalog import CatalogMaterial, CatalogWork, WorkMaterialNorm
from smeta.services.coefficient_engine import CoefficientEngine, OriginalPriceStore
from smeta.services.edit_buffer import EditKey, PendingEditBuffer
from smeta.services.line_item_tree import EstimateTree, round2

logger = logging.getLogger("smeta-session")


class EstimateSession:
    def __init__(
        self,
        tree: Optional[EstimateTree] = None,
        store: Optional[OriginalPriceStore] = None,
        current_percent: float = 0.0,
    ):
        self.tree = tree or EstimateTree()
        self.store = store if store is not None else OriginalPriceStore()
        self.coefficients = CoefficientEngine(self.store, current_percent=current_percent)
        self.edits = PendingEditBuffer()
        self.version = 0
        # Loaded prices count as baselines the first time they are seen
        self.store.remember_tree(self.tree)

    def _swap(self, tree: EstimateTree) -> EstimateTree:
        if tree is not self.tree:
            self.tree = tree
            self.version += 1
        return self.tree

    @property
    def current_percent(self) -> float:
        return self.coefficients.current_percent

    # -- work items --------------------------------------------------------

    def insert_work(
        self, work: CatalogWork, materials: Sequence[WorkMaterialNorm] = (), item_id: Optional[str] = None
    ) -> EstimateTree:
        tree = self._swap(self.tree.insert_work(work, materials, item_id=item_id))
        self.store.remember_tree(tree)
        return tree

    def set_work_quantity(self, si: int, ii: int, value: Any) -> EstimateTree:
        return self._swap(self.tree.set_work_quantity(si, ii, value))

    def set_work_price(self, si: int, ii: int, value: Any) -> EstimateTree:
        return self._swap(self.tree.set_work_price(si, ii, value))

    def delete_work(self, si: int, ii: int) -> EstimateTree:
        self.edits.discard(self.tree.sections[si].items[ii].id)
        return self._swap(self.tree.delete_work(si, ii))

    def adopt_reference_price(self, work_id: str, price: float) -> None:
        """The catalog base price of ``work_id`` became ``price``: make it the reset target."""
        self.store.overwrite(str(work_id), round2(price))

    # -- materials ---------------------------------------------------------

    def add_material(
        self, si: int, ii: int, material: CatalogMaterial, consumption: Any = 1.0, auto_calculate: bool = True
    ) -> EstimateTree:
        return self._swap(self.tree.add_material(si, ii, material, consumption, auto_calculate))

    def replace_material(self, si: int, ii: int, mi: int, material: CatalogMaterial) -> EstimateTree:
        return self._swap(self.tree.replace_material(si, ii, mi, material))

    def set_material_quantity(self, si: int, ii: int, mi: int, value: Any) -> EstimateTree:
        return self._swap(self.tree.set_material_quantity(si, ii, mi, value))

    def set_material_price(self, si: int, ii: int, mi: int, value: Any) -> EstimateTree:
        return self._swap(self.tree.set_material_price(si, ii, mi, value))

    def set_material_consumption(self, si: int, ii: int, mi: int, value: Any) -> EstimateTree:
        return self._swap(self.tree.set_material_consumption(si, ii, mi, value))

    def delete_material(self, si: int, ii: int, mi: int) -> EstimateTree:
        item = self.tree.sections[si].items[ii]
        self.edits.discard(item.id, item.materials[mi].id)
        return self._swap(self.tree.delete_material(si, ii, mi))

    # -- coefficient -------------------------------------------------------

    def apply_coefficient(self, percent: float) -> EstimateTree:
        return self._swap(self.coefficients.apply_coefficient(self.tree, percent))

    def reset_prices(self) -> EstimateTree:
        return self._swap(self.coefficients.reset_prices(self.tree))

    # -- edit buffer -------------------------------------------------------

    def stage(self, si: int, ii: int, field: str, value: Any, mi: Optional[int] = None) -> None:
        """Stage an edit for the cell currently shown at (si, ii[, mi])."""
        item = self.tree.sections[si].items[ii]
        material_id = item.materials[mi].id if mi is not None else None
        self.edits.stage(item.id, field, value, material_id=material_id)

    def commit(self) -> EstimateTree:
        """
        Apply every staged edit in staging order, then clear the buffer.

        Targets are resolved by id at commit time; edits whose line was
        removed in the meantime are dropped.
        """
        edits = self.edits.drain()
        applied = 0
        for key, value in edits:
            if self._apply_edit(key, value):
                applied += 1
        if applied != len(edits):
            logger.debug("Dropped %d staged edits for removed lines", len(edits) - applied)
        logger.debug("Committed %d staged edits (version %d)", applied, self.version)
        return self.tree

    def _apply_edit(self, key: EditKey, value: Any) -> bool:
        position = self.tree.locate(key.item_id)
        if position is None:
            return False
        si, ii = position
        if key.material_id is None:
            if key.field == "quantity":
                self.set_work_quantity(si, ii, value)
            else:
                self.set_work_price(si, ii, value)
            return True

        materials = self.tree.sections[si].items[ii].materials
        mi = next((i for i, m in enumerate(materials) if m.id == key.material_id), None)
        if mi is None:
            return False
        if key.field == "quantity":
            self.set_material_quantity(si, ii, mi, value)
        elif key.field == "price":
            self.set_material_price(si, ii, mi, value)
        else:
            self.set_material_consumption(si, ii, mi, value)
        return True
