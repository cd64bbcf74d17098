from __future__ import annotations

from typing import Callable, Dict, List, Sequence, Tuple

from models import Student

# Sortable roster columns. Keys match the ledger field names used by the UI.
SORT_COLUMNS: Dict[str, Callable[[Student], object]] = {
    "fullName": lambda s: s.fullName.casefold(),
    "phone": lambda s: s.phone,
    "totalPaid": lambda s: s.totalPaid,
    "totalDue": lambda s: s.totalDue,
}
DEFAULT_SORT = ("fullName", "asc")
SORT_ORDERS = ("asc", "desc")


class UnknownSortKey(ValueError):
    pass


def filter_students(students: Sequence[Student], query: str | None) -> List[Student]:
    """Case-insensitive match on name, substring match on phone."""
    q = (query or "").strip()
    if not q:
        return list(students)
    needle = q.casefold()
    return [s for s in students if needle in s.fullName.casefold() or q in s.phone]


def sort_students(students: Sequence[Student], key: str = "fullName", order: str = "asc") -> List[Student]:
    try:
        accessor = SORT_COLUMNS[key]
    except KeyError:
        raise UnknownSortKey(f"Cannot sort by {key!r}; expected one of {', '.join(SORT_COLUMNS)}") from None
    if order not in SORT_ORDERS:
        raise UnknownSortKey(f"Sort order must be 'asc' or 'desc', got {order!r}")
    return sorted(students, key=accessor, reverse=(order == "desc"))


def toggle_sort(current: Tuple[str, str], key: str) -> Tuple[str, str]:
    """Clicking the active column flips direction; another column starts ascending."""
    if key not in SORT_COLUMNS:
        raise UnknownSortKey(f"Cannot sort by {key!r}")
    cur_key, cur_order = current
    if cur_key == key:
        return key, ("desc" if cur_order == "asc" else "asc")
    return key, "asc"


def roster_view(students: Sequence[Student], query: str | None = None, key: str = "fullName", order: str = "asc") -> List[Student]:
    return sort_students(filter_students(students, query), key, order)


def payment_status(student: Student) -> dict:
    if student.is_paid_up:
        return {"code": "paid", "label": "Paid in full"}
    return {"code": "due", "label": "Has dues"}
