"""Dashboard projections over the roster and the unified payment set.

Everything here is a pure function of its arguments; the live store calls
``build_views`` after every state change instead of patching old results.
"""
from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Dict, Iterable, List, Sequence
from zoneinfo import ZoneInfo

from models import Payment, Student
from utils.timezone_helpers import dashboard_zone, to_calendar_day

UNKNOWN_STUDENT = "Unknown student"

# Leading unsigned decimal, like a lenient parseFloat without the sign
_AMOUNT_RE = re.compile(r"^\s*\+?((?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)")


def parse_amount(text) -> float:
    """Numeric value of a payment's amount-as-text. Never raises.

    Empty, non-numeric, negative and non-finite input all count as 0.
    """
    if text is None:
        return 0.0
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        value = float(text)
    else:
        m = _AMOUNT_RE.match(str(text))
        if not m:
            return 0.0
        try:
            value = float(m.group(1))
        except ValueError:
            return 0.0
    if not math.isfinite(value) or value < 0:
        return 0.0
    return value


@dataclass(frozen=True)
class Totals:
    total_paid: float
    total_due: float
    student_count: int
    students_with_due: int
    students_paid_in_full: int


@dataclass(frozen=True)
class DailyRow:
    payment_id: str
    student_id: str | None
    student_name: str
    payment_type: str
    raw_amount: str
    amount: float


@dataclass(frozen=True)
class DailyReport:
    day: date
    total: float
    rows: List[DailyRow] = field(default_factory=list)


@dataclass(frozen=True)
class SeriesPoint:
    day: date
    label: str
    total: float


@dataclass(frozen=True)
class DashboardViews:
    reference_date: date
    totals: Totals
    daily: DailyReport
    monthly: List[SeriesPoint]

    def to_dict(self) -> dict:
        out = asdict(self)
        out["reference_date"] = self.reference_date.isoformat()
        out["daily"]["day"] = self.daily.day.isoformat()
        for point in out["monthly"]:
            point["day"] = point["day"].isoformat()
        return out


def compute_totals(students: Sequence[Student]) -> Totals:
    """Roll up the ledger-owned running totals. Payments are not consulted."""
    with_due = sum(1 for s in students if s.totalDue > 0)
    return Totals(
        total_paid=sum(s.totalPaid for s in students),
        total_due=sum(s.totalDue for s in students),
        student_count=len(students),
        students_with_due=with_due,
        students_paid_in_full=len(students) - with_due,
    )


def _by_day(payments: Iterable[Payment], tz: ZoneInfo) -> Dict[date, List[Payment]]:
    buckets: Dict[date, List[Payment]] = {}
    for p in payments:
        day = to_calendar_day(p.paymentDate, tz)
        if day is not None:
            buckets.setdefault(day, []).append(p)
    return buckets


def daily_report(
    students: Sequence[Student],
    payments: Iterable[Payment],
    reference_date: date,
    tz: ZoneInfo | None = None,
) -> DailyReport:
    tz = tz or dashboard_zone()
    names = {s.id: s.fullName for s in students}
    todays = _by_day(payments, tz).get(reference_date, [])
    rows = [
        DailyRow(
            payment_id=p.id,
            student_id=p.studentId,
            student_name=names.get(p.studentId or "") or UNKNOWN_STUDENT,
            payment_type=p.paymentType,
            raw_amount=p.paymentName,
            amount=parse_amount(p.paymentName),
        )
        for p in todays
    ]
    return DailyReport(day=reference_date, total=sum(r.amount for r in rows), rows=rows)


def monthly_series(
    payments: Iterable[Payment],
    reference_date: date,
    tz: ZoneInfo | None = None,
) -> List[SeriesPoint]:
    """One point per day from the 1st of the month through ``reference_date``.

    Days without payments are present with a total of 0.
    """
    tz = tz or dashboard_zone()
    buckets = _by_day(payments, tz)
    start = reference_date.replace(day=1)
    points: List[SeriesPoint] = []
    day = start
    while day <= reference_date:
        total = sum(parse_amount(p.paymentName) for p in buckets.get(day, ()))
        points.append(SeriesPoint(day=day, label=f"{day:%b} {day.day}", total=total))
        day += timedelta(days=1)
    return points


def build_views(
    students: Sequence[Student],
    payments: Sequence[Payment],
    reference_date: date,
    tz: ZoneInfo | None = None,
) -> DashboardViews:
    tz = tz or dashboard_zone()
    return DashboardViews(
        reference_date=reference_date,
        totals=compute_totals(students),
        daily=daily_report(students, payments, reference_date, tz),
        monthly=monthly_series(payments, reference_date, tz),
    )
