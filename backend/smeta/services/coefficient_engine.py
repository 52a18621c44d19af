"""
CoefficientEngine — percentage mark-up / discount on work prices.

A coefficient is always applied to the remembered pre-coefficient baseline of
each work item, never to its current price, so successive coefficients do not
compound: +20 % then -10 % on a baseline of 100 gives 90, not 108.

Materials are never repriced here; they pass through at cost.
"""

import logging
from typing import Dict, Iterator, Mapping, Optional

from smeta.services.line_item_tree import EstimateTree, WorkItem, round2

logger = logging.getLogger("smeta-coefficient")


def item_key(item: WorkItem) -> str:
    """Stable identity of a priced line across reloads: catalog id, else code+name."""
    if item.work_id:
        return str(item.work_id)
    return f"{item.code}_{item.name}"


class OriginalPriceStore:
    """
    Baseline price per item key, recorded once and never cleared implicitly.

    Only a fresh estimate starts with an empty store; persisted estimates
    reload theirs through ``from_dict``.
    """

    def __init__(self, prices: Optional[Mapping[str, float]] = None):
        self._prices: Dict[str, float] = {k: float(v) for k, v in (prices or {}).items()}

    def __contains__(self, key: str) -> bool:
        return key in self._prices

    def __len__(self) -> int:
        return len(self._prices)

    def __iter__(self) -> Iterator[str]:
        return iter(self._prices)

    def get(self, key: str) -> Optional[float]:
        return self._prices.get(key)

    def remember(self, item: WorkItem) -> float:
        """Record ``item.price`` as the baseline if its key has none; return the baseline."""
        key = item_key(item)
        if key not in self._prices:
            self._prices[key] = item.price
        return self._prices[key]

    def remember_tree(self, tree: EstimateTree) -> None:
        for item in tree.iter_work_items():
            self.remember(item)

    def overwrite(self, key: str, price: float) -> None:
        """Explicit baseline change, e.g. after the catalog base price was updated."""
        self._prices[key] = float(price)

    def to_dict(self) -> Dict[str, float]:
        return dict(self._prices)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, float]]) -> "OriginalPriceStore":
        return cls(data)


class CoefficientEngine:
    def __init__(self, store: Optional[OriginalPriceStore] = None, current_percent: float = 0.0):
        self.store = store if store is not None else OriginalPriceStore()
        self.current_percent = current_percent

    def apply_coefficient(self, tree: EstimateTree, percent: float) -> EstimateTree:
        """Reprice every work item at ``baseline × (1 + percent/100)``."""
        multiplier = 1 + float(percent) / 100

        def _reprice(item: WorkItem) -> WorkItem:
            baseline = self.store.remember(item)
            return item.with_price(round2(baseline * multiplier))

        repriced = tree.map_work_items(_reprice)
        self.current_percent = float(percent)
        logger.info(
            "Coefficient %+.2f%% applied to %d work items",
            self.current_percent, sum(1 for _ in repriced.iter_work_items()),
        )
        return repriced

    def reset_prices(self, tree: EstimateTree) -> EstimateTree:
        """Restore baselines; items without a recorded baseline keep their price."""

        def _restore(item: WorkItem) -> WorkItem:
            baseline = self.store.get(item_key(item))
            if baseline is None or baseline == item.price:
                return item
            return item.with_price(baseline)

        restored = tree.map_work_items(_restore)
        self.current_percent = 0.0
        logger.info("Work prices reset to baselines")
        return restored
