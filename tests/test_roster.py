import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
sys.path.insert(0, os.path.dirname(__file__))

from utils.roster import (
    SORT_COLUMNS,
    UnknownSortKey,
    filter_students,
    payment_status,
    roster_view,
    sort_students,
    toggle_sort,
)
from fakes import student

ROSTER = [
    student("s1", name="mona", phone="0100111", paid=300, due=0),
    student("s2", name="Ahmed", phone="0122333", paid=100, due=200),
    student("s3", name="Zeinab", phone="0155444", paid=250, due=-10),
]


def test_filter_by_name_is_case_insensitive():
    assert [s.id for s in filter_students(ROSTER, "AHM")] == ["s2"]


def test_filter_by_phone_substring():
    assert [s.id for s in filter_students(ROSTER, "0155")] == ["s3"]


def test_blank_filter_keeps_everyone():
    assert len(filter_students(ROSTER, "  ")) == 3


@pytest.mark.parametrize(
    "key,order,expected",
    [
        ("fullName", "asc", ["s2", "s1", "s3"]),
        ("fullName", "desc", ["s3", "s1", "s2"]),
        ("totalPaid", "asc", ["s2", "s3", "s1"]),
        ("totalDue", "desc", ["s2", "s1", "s3"]),
    ],
)
def test_sort_by_enumerated_columns(key, order, expected):
    assert [s.id for s in sort_students(ROSTER, key, order)] == expected


def test_unknown_sort_key_is_rejected():
    with pytest.raises(UnknownSortKey):
        sort_students(ROSTER, "__class__")
    with pytest.raises(UnknownSortKey):
        sort_students(ROSTER, "fullName", "sideways")


def test_toggle_sort():
    assert toggle_sort(("fullName", "asc"), "fullName") == ("fullName", "desc")
    assert toggle_sort(("fullName", "desc"), "fullName") == ("fullName", "asc")
    assert toggle_sort(("fullName", "desc"), "totalDue") == ("totalDue", "asc")
    with pytest.raises(UnknownSortKey):
        toggle_sort(("fullName", "asc"), "id")


def test_roster_view_filters_then_sorts():
    assert [s.id for s in roster_view(ROSTER, "01", "totalPaid", "desc")] == ["s1", "s3", "s2"]


def test_every_sort_column_has_an_accessor():
    for accessor in SORT_COLUMNS.values():
        accessor(ROSTER[0])


def test_payment_status():
    assert payment_status(ROSTER[0])["code"] == "paid"
    assert payment_status(ROSTER[1])["code"] == "due"
    assert payment_status(ROSTER[2])["code"] == "paid"
