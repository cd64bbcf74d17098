import os
import sys
import threading
from datetime import date
from zoneinfo import ZoneInfo

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
sys.path.insert(0, os.path.dirname(__file__))

from utils.ledger import LedgerError
from utils.live_state import (
    STATUS_DEGRADED,
    STATUS_LOADING,
    STATUS_READY,
    EventQueue,
    LedgerStore,
)
from fakes import FakeLedger, payment, student

REF = date(2024, 5, 15)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def store(ledger):
    s = LedgerStore(ledger, tz=ZoneInfo("Africa/Cairo"), today=lambda: REF)
    s.start(dispatch=False)
    yield s
    s.stop()


def _push_roster(ledger, store, students):
    ledger.push_students(students)
    store.events.run_pending()


def test_loading_until_first_roster(store):
    snap = store.snapshot()
    assert snap.status == STATUS_LOADING
    assert snap.views is None
    assert not snap.has_data


def test_callbacks_are_queued_not_applied_inline(ledger, store):
    ledger.push_students([student("s1")])
    assert store.snapshot().students == ()
    assert store.events.run_pending() == 1
    assert store.snapshot().status == STATUS_READY


def test_one_subscription_per_roster_student(ledger, store):
    _push_roster(ledger, store, [student("s1"), student("s2")])
    assert store.active_subscriptions() == {"s1", "s2"}

    _push_roster(ledger, store, [student("s2"), student("s3")])
    assert store.active_subscriptions() == {"s2", "s3"}
    assert ledger.payment_subs["s1"].closed
    assert not ledger.payment_subs["s2"].closed
    # s2 kept its original listener
    assert ledger.history.count("s2") == 1


def test_payments_flow_into_views(ledger, store):
    _push_roster(ledger, store, [student("s1", paid=100, due=0), student("s2", paid=0, due=50)])
    ledger.push_payments("s1", [payment("p1", "100", "2024-05-15")])
    ledger.push_payments("s2", [payment("p1", "abc", "2024-05-15")])
    store.events.run_pending()

    snap = store.snapshot()
    assert {(p.studentId, p.id) for p in snap.payments} == {("s1", "p1"), ("s2", "p1")}
    assert snap.views.totals.total_paid == 100
    assert snap.views.totals.students_with_due == 1
    assert snap.views.daily.total == 100
    assert len(snap.views.monthly) == 15
    assert [p.id for p in snap.payments_for("s2")] == ["p1"]


def test_student_leaving_roster_drops_its_payments(ledger, store):
    _push_roster(ledger, store, [student("s1"), student("s2")])
    ledger.push_payments("s1", [payment("p1", "10", "2024-05-15")])
    ledger.push_payments("s2", [payment("p2", "20", "2024-05-15")])
    store.events.run_pending()

    _push_roster(ledger, store, [student("s2")])
    assert [p.studentId for p in store.snapshot().payments] == ["s2"]


def test_late_callback_after_disposal_is_ignored(ledger, store):
    _push_roster(ledger, store, [student("s1"), student("s2")])
    ledger.push_payments("s2", [payment("p2", "20", "2024-05-15")])
    store.events.run_pending()
    stale_listener = ledger.payment_listeners["s1"][0]

    _push_roster(ledger, store, [student("s2")])
    before = store.snapshot()
    stale_listener([payment("late", "999", "2024-05-15")])
    store.events.run_pending()

    after = store.snapshot()
    assert after.payments == before.payments
    assert after.version == before.version


def test_callback_already_queued_when_disposed_is_ignored(ledger, store):
    _push_roster(ledger, store, [student("s1")])
    ledger.push_payments("s1", [payment("p1", "10")])
    # p2 is queued before the roster change disposes s1, so it must be dropped
    ledger.push_students([])
    ledger.push_payments("s1", [payment("p2", "10")])
    store.events.run_pending()
    assert store.snapshot().payments == ()
    assert store.active_subscriptions() == set()


def test_subscription_error_marks_store_degraded(ledger, store):
    _push_roster(ledger, store, [student("s1")])
    ledger.fail("s1", LedgerError("permission denied"))
    store.events.run_pending()

    snap = store.snapshot()
    assert snap.status == STATUS_DEGRADED
    assert "permission denied" in snap.errors["payments:s1"]
    assert snap.has_data

    ledger.push_payments("s1", [payment("p1", "10")])
    store.events.run_pending()
    assert store.snapshot().status == STATUS_READY


def test_roster_error_before_data_is_distinct_from_loading(ledger, store):
    ledger.roster[1](LedgerError("offline"))
    store.events.run_pending()
    snap = store.snapshot()
    assert snap.status == STATUS_DEGRADED
    assert snap.views is None


def test_stop_disposes_everything(ledger, store):
    _push_roster(ledger, store, [student("s1"), student("s2")])
    store.stop()
    assert ledger.roster_sub.closed
    assert all(sub.closed for sub in ledger.payment_subs.values())
    ledger.push_students([student("s3")])
    store.events.run_pending()
    assert [s.id for s in store.snapshot().students] == ["s1", "s2"]


def test_views_follow_day_rollover(ledger):
    days = [REF]
    s = LedgerStore(ledger, tz=ZoneInfo("Africa/Cairo"), today=lambda: days[0])
    s.start(dispatch=False)
    ledger.push_students([student("s1")])
    s.events.run_pending()
    days[0] = date(2024, 5, 16)
    assert len(s.snapshot().views.monthly) == 16
    s.stop()


def test_wait_for_change_wakes_on_publish(ledger, store):
    version = store.snapshot().version
    results = []

    def waiter():
        results.append(store.wait_for_change(version, timeout=5))

    t = threading.Thread(target=waiter)
    t.start()
    ledger.push_students([student("s1")])
    store.events.run_pending()
    t.join(5)
    assert results and results[0].version > version


def test_event_queue_runs_in_order_and_survives_failures():
    q = EventQueue()
    seen = []

    def boom():
        raise RuntimeError("handler failed")

    q.post(seen.append, 1)
    q.post(boom)
    q.post(seen.append, 2)
    assert q.run_pending() == 3
    assert seen == [1, 2]


def test_event_queue_dispatcher_thread():
    q = EventQueue()
    done = threading.Event()
    q.start()
    try:
        q.post(done.set)
        assert done.wait(5)
    finally:
        q.stop()
