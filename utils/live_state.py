"""Live dashboard state fed by ledger subscriptions.

Gateway callbacks never touch state directly: they post events onto an
``EventQueue`` which a single dispatcher thread drains, so reconciliation and
recomputation always run one handler at a time. Request threads only ever see
immutable ``StoreSnapshot`` objects.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Optional, Tuple

from flask import current_app

from config import ledger_is_configured
from models import Payment, Student
from utils.aggregation import DashboardViews, build_views
from utils.reconciler import PaymentReconciler
from utils.timezone_helpers import dashboard_today, dashboard_zone

log = logging.getLogger(__name__)

STATUS_UNCONFIGURED = "unconfigured"
STATUS_LOADING = "loading"
STATUS_READY = "ready"
STATUS_DEGRADED = "degraded"


class EventQueue:
    """FIFO of callables executed on one thread."""

    def __init__(self, name: str = "ledger-events"):
        self.name = name
        self._q: "queue.Queue[Tuple[Callable[..., None], tuple]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    def post(self, fn: Callable[..., None], *args: Any) -> None:
        self._q.put((fn, args))

    def _run_one(self, fn, args) -> None:
        try:
            fn(*args)
        except Exception:
            log.exception("Ledger event handler %s failed", getattr(fn, "__name__", fn))

    def run_pending(self) -> int:
        """Drain queued events on the calling thread. Returns how many ran."""
        ran = 0
        while True:
            try:
                fn, args = self._q.get_nowait()
            except queue.Empty:
                return ran
            self._run_one(fn, args)
            ran += 1

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                fn, args = self._q.get(timeout=0.5)
            except queue.Empty:
                continue
            self._run_one(fn, args)

    def stop(self, timeout: float = 2.0) -> None:
        self._stopping.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def __len__(self):
        return self._q.qsize()


class _Token:
    """Liveness flag shared by a subscription's callbacks."""

    __slots__ = ("alive",)

    def __init__(self):
        self.alive = True


@dataclass(frozen=True)
class StoreSnapshot:
    version: int
    status: str
    errors: Dict[str, str] = field(default_factory=dict)
    students: Tuple[Student, ...] = ()
    payments: Tuple[Payment, ...] = ()
    views: Optional[DashboardViews] = None

    @property
    def has_data(self) -> bool:
        return self.status in (STATUS_READY, STATUS_DEGRADED) and self.views is not None

    def student(self, student_id: str) -> Optional[Student]:
        for s in self.students:
            if s.id == student_id:
                return s
        return None

    def payments_for(self, student_id: str) -> list[Payment]:
        return [p for p in self.payments if p.studentId == student_id]


class LedgerStore:
    def __init__(self, gateway, tz=None, today: Callable[[], date] | None = None, events: EventQueue | None = None):
        self.gateway = gateway
        self.tz = tz or dashboard_zone()
        self._today = today or (lambda: dashboard_today(self.tz))
        self.events = events or EventQueue()
        self._lock = threading.RLock()
        self._changed = threading.Condition()
        self._started = False
        self._roster_seen = False
        self._students: Tuple[Student, ...] = ()
        self._reconciler = PaymentReconciler()
        self._errors: Dict[str, str] = {}
        self._roster: Optional[Tuple[_Token, Any]] = None
        self._subs: Dict[str, Tuple[_Token, Any]] = {}
        self._snapshot = StoreSnapshot(version=0, status=STATUS_LOADING)

    # -- lifecycle ---------------------------------------------------------

    def start(self, dispatch: bool = True) -> "LedgerStore":
        with self._lock:
            if self._started:
                return self
            self._started = True
            token = _Token()
            sub = self.gateway.subscribe_students(
                lambda students: self.events.post(self._on_students, token, students),
                lambda exc: self.events.post(self._on_error, "students", token, exc),
            )
            self._roster = (token, sub)
        if dispatch:
            self.events.start()
        log.info("Ledger store started")
        return self

    def stop(self) -> None:
        with self._lock:
            if self._roster is not None:
                self._dispose(self._roster)
                self._roster = None
            for pair in self._subs.values():
                self._dispose(pair)
            self._subs.clear()
            self._started = False
        self.events.stop()
        log.info("Ledger store stopped")

    @staticmethod
    def _dispose(pair: Tuple[_Token, Any]) -> None:
        token, sub = pair
        token.alive = False
        sub.unsubscribe()

    def active_subscriptions(self) -> set[str]:
        with self._lock:
            return set(self._subs)

    # -- event handlers (dispatcher thread) ---------------------------------

    def _on_students(self, token: _Token, students) -> None:
        with self._lock:
            if not token.alive:
                return
            self._roster_seen = True
            self._students = tuple(students)
            self._errors.pop("students", None)
            self._sync_subscriptions()
            self._publish()

    def _sync_subscriptions(self) -> None:
        roster = [s.id for s in self._students]
        wanted = set(roster)
        for student_id in [sid for sid in self._subs if sid not in wanted]:
            self._dispose(self._subs.pop(student_id))
            self._reconciler.drop_student(student_id)
            self._errors.pop(f"payments:{student_id}", None)
        for student_id in roster:
            if student_id in self._subs:
                continue
            token = _Token()
            sub = self.gateway.subscribe_payments(
                student_id,
                lambda payments, sid=student_id, t=token: self.events.post(self._on_payments, sid, t, payments),
                lambda exc, sid=student_id, t=token: self.events.post(self._on_error, f"payments:{sid}", t, exc),
            )
            self._subs[student_id] = (token, sub)

    def _on_payments(self, student_id: str, token: _Token, payments) -> None:
        with self._lock:
            if not token.alive:
                return
            self._reconciler.apply_snapshot(student_id, payments)
            self._errors.pop(f"payments:{student_id}", None)
            self._publish()

    def _on_error(self, source: str, token: _Token, exc: Exception) -> None:
        with self._lock:
            if not token.alive:
                return
            log.error("Ledger subscription %s failed: %s", source, exc)
            self._errors[source] = str(exc) or exc.__class__.__name__
            self._publish()

    # -- derived state -------------------------------------------------------

    def _status(self) -> str:
        if self._errors:
            return STATUS_DEGRADED
        return STATUS_READY if self._roster_seen else STATUS_LOADING

    def _publish(self) -> None:
        payments = tuple(self._reconciler.payments())
        views = None
        if self._roster_seen:
            views = build_views(self._students, payments, self._today(), self.tz)
        snap = StoreSnapshot(
            version=self._snapshot.version + 1,
            status=self._status(),
            errors=dict(self._errors),
            students=self._students,
            payments=payments,
            views=views,
        )
        with self._changed:
            self._snapshot = snap
            self._changed.notify_all()

    def snapshot(self) -> StoreSnapshot:
        """Latest published state, with views re-derived if the day has rolled over."""
        snap = self._snapshot
        if snap.views is not None:
            today = self._today()
            if snap.views.reference_date != today:
                views = build_views(snap.students, snap.payments, today, self.tz)
                snap = StoreSnapshot(snap.version, snap.status, snap.errors, snap.students, snap.payments, views)
        return snap

    def wait_for_change(self, version: int, timeout: float) -> StoreSnapshot:
        with self._changed:
            self._changed.wait_for(lambda: self._snapshot.version > version, timeout)
        return self.snapshot()


_init_lock = threading.Lock()


def get_store(app=None) -> Optional[LedgerStore]:
    """Return the app's store, starting Firestore listeners on first use.

    Returns None when the ledger is not configured or autostart is off and no
    store has been installed on ``app.extensions``.
    """
    app = app or current_app._get_current_object()
    store = app.extensions.get("ledger_store")
    if store is not None:
        return store
    if not ledger_is_configured(app.config) or not app.config.get("LEDGER_AUTOSTART", True):
        return None
    with _init_lock:
        store = app.extensions.get("ledger_store")
        if store is None:
            from utils.ledger import FirestoreLedger

            store = LedgerStore(
                FirestoreLedger.from_config(app.config),
                tz=dashboard_zone(app.config.get("DASHBOARD_TIMEZONE")),
            )
            store.start()
            app.extensions["ledger_store"] = store
    return store
