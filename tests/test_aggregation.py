import os
import sys
from datetime import date
from zoneinfo import ZoneInfo

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
sys.path.insert(0, os.path.dirname(__file__))

from utils.aggregation import (
    UNKNOWN_STUDENT,
    build_views,
    compute_totals,
    daily_report,
    monthly_series,
    parse_amount,
)
from fakes import payment, student

CAIRO = ZoneInfo("Africa/Cairo")
REF = date(2024, 5, 15)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("150", 150.0),
        ("12.5", 12.5),
        (" 40 ", 40.0),
        ("1e3", 1000.0),
        ("12abc", 12.0),
        ("abc", 0.0),
        ("", 0.0),
        (None, 0.0),
        ("-5", 0.0),
        ("nan", 0.0),
        ("inf", 0.0),
        (75, 75.0),
    ],
)
def test_parse_amount_never_raises(text, expected):
    assert parse_amount(text) == expected


def test_totals_scenario():
    students = [student("s1", paid=100, due=0), student("s2", paid=0, due=50)]
    totals = compute_totals(students)
    assert totals.total_paid == 100
    assert totals.total_due == 50
    assert totals.students_with_due == 1
    assert totals.students_paid_in_full == 1
    assert totals.student_count == 2


def test_due_and_paid_counts_cover_roster():
    students = [
        student("a", due=10),
        student("b", due=0),
        student("c", due=-20),
        student("d", due=0.01),
    ]
    totals = compute_totals(students)
    assert totals.students_with_due + totals.students_paid_in_full == len(students)
    assert totals.students_paid_in_full == 2


def test_totals_come_from_students_not_payments():
    totals = compute_totals([student("s1", paid=10, due=5)])
    assert totals.total_paid == 10


def test_non_numeric_amount_contributes_zero_today():
    payments = [
        payment("p1", "abc", "2024-05-15", student_id="s1"),
        payment("p2", "200", "2024-05-15", student_id="s1"),
    ]
    report = daily_report([student("s1", name="Mona")], payments, REF, CAIRO)
    assert report.total == 200
    assert [r.amount for r in report.rows] == [0.0, 200.0]
    assert report.rows[0].raw_amount == "abc"


def test_daily_report_is_calendar_day_in_dashboard_zone():
    payments = [
        payment("p1", "10", "2024-05-15", student_id="s1"),
        payment("p2", "20", "2024-05-15T08:00:00", student_id="s1"),
        # 23:30 UTC on the 14th is already the 15th in Cairo
        payment("p3", "30", "2024-05-14T23:30:00Z", student_id="s1"),
        payment("p4", "40", "2024-05-14", student_id="s1"),
        payment("p5", "50", "not a date", student_id="s1"),
        payment("p6", "60", "", student_id="s1"),
    ]
    report = daily_report([student("s1")], payments, REF, CAIRO)
    assert [r.payment_id for r in report.rows] == ["p1", "p2", "p3"]
    assert report.total == 60


def test_daily_report_names_unknown_students():
    payments = [payment("p1", "10", "2024-05-15", student_id="gone")]
    report = daily_report([student("s1")], payments, REF, CAIRO)
    assert report.rows[0].student_name == UNKNOWN_STUDENT


def test_monthly_series_is_contiguous_and_zero_filled():
    payments = [
        payment("p1", "100", "2024-05-01", student_id="s1"),
        payment("p2", "50", "2024-05-03", student_id="s1"),
        payment("p3", "25", "2024-05-03", student_id="s2"),
        payment("p4", "999", "2024-04-30", student_id="s1"),
        payment("p5", "999", "2024-05-16", student_id="s1"),
    ]
    series = monthly_series(payments, REF, CAIRO)
    assert len(series) == 15
    assert [p.day.day for p in series] == list(range(1, 16))
    assert series[0].total == 100
    assert series[1].total == 0
    assert series[2].total == 75
    assert all(p.total >= 0 for p in series)
    assert series[0].label == "May 1"


def test_monthly_series_on_first_of_month():
    series = monthly_series([], date(2024, 2, 1), CAIRO)
    assert len(series) == 1
    assert series[0].total == 0


def test_monthly_series_matches_daily_report():
    payments = [payment("p1", "10", "2024-05-15", student_id="s1"), payment("p2", "5", "2024-05-15", student_id="s1")]
    series = monthly_series(payments, REF, CAIRO)
    assert series[-1].total == daily_report([], payments, REF, CAIRO).total


def test_build_views_is_idempotent():
    students = [student("s1", paid=100, due=0), student("s2", paid=0, due=50)]
    payments = [payment("p1", "100", "2024-05-15", student_id="s1")]
    first = build_views(students, payments, REF, CAIRO)
    second = build_views(students, payments, REF, CAIRO)
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_views_serialise_dates_as_iso_strings():
    views = build_views([student("s1")], [], REF, CAIRO).to_dict()
    assert views["reference_date"] == "2024-05-15"
    assert views["daily"]["day"] == "2024-05-15"
    assert views["monthly"][0]["day"] == "2024-05-01"
