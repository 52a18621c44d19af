"""
SortEngine — deterministic ordering of estimate lines.

Priority: phase → code → section → subsection. Codes such as ``"2-100"`` are
compared by their numeric prefix and then their numeric remainder, so
``2-20 < 2-100 < 10-5``; when either side is not numeric the whole code is
compared as text. Missing fields compare as empty strings and sort first.

Text comparison is case-insensitive and treats ``ё`` as ``е``; ties
fall back to the raw string so the order stays total.

The same comparator drives the full sort and ``find_insert_position``, which
lets a single new line be placed without re-sorting the whole section.
"""

import functools
import re
from typing import Any, Callable, List, Optional, Sequence, Tuple

Comparator = Callable[[Any, Any], int]

_CODE_SEPARATOR = re.compile(r"[-–]")
_NUMBER = re.compile(r"^\s*\d+(?:[.,]\d+)?\s*$")


def _collation_key(value: str) -> Tuple[str, str]:
    folded = value.casefold().replace("ё", "е")
    return folded, value


def compare_text(a: Optional[str], b: Optional[str]) -> int:
    ka, kb = _collation_key(a or ""), _collation_key(b or "")
    return (ka > kb) - (ka < kb)


def _as_number(part: Optional[str]) -> Optional[float]:
    if part is None or not _NUMBER.match(part):
        return None
    return float(part.replace(",", "."))


def split_code(code: Optional[str]) -> Tuple[str, Optional[str]]:
    parts = _CODE_SEPARATOR.split(code or "", 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)


def compare_codes(a: Optional[str], b: Optional[str]) -> int:
    """``"2-20" < "2-100" < "10-5"``; non-numeric codes compare as text."""
    prefix_a, rest_a = split_code(a)
    prefix_b, rest_b = split_code(b)

    num_a, num_b = _as_number(prefix_a), _as_number(prefix_b)
    if num_a is None or num_b is None:
        return compare_text(a, b)
    if num_a != num_b:
        return -1 if num_a < num_b else 1

    rest_num_a, rest_num_b = _as_number(rest_a), _as_number(rest_b)
    if rest_num_a is not None and rest_num_b is not None and rest_num_a != rest_num_b:
        return -1 if rest_num_a < rest_num_b else 1

    return compare_text(a, b)


def compare_work_items(a: Any, b: Any) -> int:
    for field_name, compare in (
        ("phase", compare_text),
        ("code", compare_codes),
        ("section", compare_text),
        ("subsection", compare_text),
    ):
        result = compare(getattr(a, field_name, None), getattr(b, field_name, None))
        if result:
            return result
    return 0


def compare_sections(a: Any, b: Any) -> int:
    """Sections order by their code prefix, then by phase title."""
    return compare_codes(a.code, b.code) or compare_text(a.phase, b.phase)


def sort_work_items(items: Sequence[Any], compare: Comparator = compare_work_items) -> List[Any]:
    """Stable sort; returns a new list."""
    return sorted(items, key=functools.cmp_to_key(compare))


def find_insert_position(items: Sequence[Any], new_item: Any, compare: Comparator = compare_work_items) -> int:
    """Leftmost ``i`` with ``compare(items[i], new_item) >= 0`` (binary search)."""
    lo, hi = 0, len(items)
    while lo < hi:
        mid = (lo + hi) // 2
        if compare(items[mid], new_item) < 0:
            lo = mid + 1
        else:
            hi = mid
    return lo
