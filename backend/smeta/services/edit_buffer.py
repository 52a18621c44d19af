"""
Pending edit buffer.

Keystrokes land here, keyed by the line they target (work item id, plus the
material line id for material cells) so inserts and deletes elsewhere in the
tree never retarget them. The estimate model only sees values once
``commit()`` hands them to the session. Staging the same cell twice keeps the
last value; commit order follows first staging order.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

WORK_FIELDS = ("quantity", "price")
MATERIAL_FIELDS = ("quantity", "price", "consumption")


@dataclass(frozen=True)
class EditKey:
    item_id: str
    field: str
    material_id: Optional[str] = None


class PendingEditBuffer:
    def __init__(self):
        self._edits: Dict[EditKey, Any] = {}

    def __len__(self) -> int:
        return len(self._edits)

    def __bool__(self) -> bool:
        return bool(self._edits)

    def stage(self, item_id: str, field: str, value: Any, material_id: Optional[str] = None) -> None:
        allowed = MATERIAL_FIELDS if material_id is not None else WORK_FIELDS
        if field not in allowed:
            raise ValueError(f"Unknown editable field {field!r}")
        self._edits[EditKey(item_id, field, material_id)] = value

    def pending(self, item_id: str, field: str, material_id: Optional[str] = None) -> Any:
        return self._edits.get(EditKey(item_id, field, material_id))

    def discard(self, item_id: Optional[str] = None, material_id: Optional[str] = None) -> None:
        if item_id is None:
            self._edits.clear()
            return
        for key in [
            k for k in self._edits
            if k.item_id == item_id and (material_id is None or k.material_id == material_id)
        ]:
            del self._edits[key]

    def drain(self) -> List[Tuple[EditKey, Any]]:
        edits = list(self._edits.items())
        self._edits.clear()
        return edits
