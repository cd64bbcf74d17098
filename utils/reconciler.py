from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

from models import Payment

PaymentKey = Tuple[str, str]


class PaymentReconciler:
    """Unified payment set across every student currently on the roster.

    Entries are keyed by ``(student_id, payment_id)`` so two students whose
    sub-collections reuse an id never evict each other. Dict insertion order is
    arrival order: surviving entries keep their place, a student's fresh
    snapshot is appended at the end.
    """

    def __init__(self):
        self._entries: Dict[PaymentKey, Payment] = {}

    def apply_snapshot(self, student_id: str, payments: Iterable[Payment]) -> None:
        """Replace ``student_id``'s contribution with its latest full snapshot."""
        if not student_id:
            raise ValueError("student_id is required to reconcile payments")
        remainder = {k: p for k, p in self._entries.items() if k[0] != student_id}
        for p in payments:
            remainder[(student_id, p.id)] = p.stamped(student_id)
        self._entries = remainder

    def drop_student(self, student_id: str) -> None:
        self._entries = {k: p for k, p in self._entries.items() if k[0] != student_id}

    def payments(self) -> List[Payment]:
        return list(self._entries.values())

    def payments_for(self, student_id: str) -> List[Payment]:
        return [p for k, p in self._entries.items() if k[0] == student_id]

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key: PaymentKey) -> bool:
        return key in self._entries
