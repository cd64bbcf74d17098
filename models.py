from __future__ import annotations

import math
from dataclasses import dataclass, replace, asdict
from datetime import date, datetime
from typing import Any, Mapping


def _number(value: Any) -> float:
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


@dataclass(frozen=True)
class Student:
    """Projection of a ``students/{id}`` ledger document (read-only)."""

    id: str
    fullName: str = ""
    phone: str = ""
    totalPaid: float = 0.0
    totalDue: float = 0.0

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any] | None) -> "Student":
        data = data or {}
        return cls(
            id=str(doc_id),
            fullName=str(data.get("fullName") or ""),
            phone=str(data.get("phone") or ""),
            totalPaid=_number(data.get("totalPaid")),
            totalDue=_number(data.get("totalDue")),
        )

    @property
    def is_paid_up(self) -> bool:
        return self.totalDue <= 0

    def to_dict(self) -> dict:
        return asdict(self)

    def __repr__(self):
        return f"<Student {self.fullName} ({self.id})>"


@dataclass(frozen=True)
class Payment:
    """Projection of a ``students/{id}/payments/{pid}`` document.

    ``paymentName`` holds the amount as text; ``studentId`` is attached
    locally during reconciliation and never written back.
    """

    id: str
    paymentName: str = "0"
    paymentDate: str = ""
    paymentType: str = ""
    studentId: str | None = None

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any] | None) -> "Payment":
        data = data or {}
        raw_date = data.get("paymentDate") or ""
        # Firestore timestamps arrive as datetime subclasses
        if isinstance(raw_date, (datetime, date)):
            raw_date = raw_date.isoformat()
        amount = data.get("paymentName")
        return cls(
            id=str(doc_id),
            paymentName=str(amount) if amount not in (None, "") else "0",
            paymentDate=str(raw_date),
            paymentType=str(data.get("paymentType") or ""),
        )

    def stamped(self, student_id: str) -> "Payment":
        return replace(self, studentId=student_id)

    def history_entry(self) -> dict:
        return {
            "paymentName": self.paymentName,
            "paymentDate": self.paymentDate,
            "paymentType": self.paymentType,
        }

    def to_dict(self) -> dict:
        return asdict(self)

    def __repr__(self):
        return f"<Payment {self.id} StudentID={self.studentId} Amount={self.paymentName}>"
