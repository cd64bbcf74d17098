"""Read-only gateway over the Firestore ledger.

Both subscriptions deliver the full current listing of a collection every time
any member changes. Callbacks arrive on Firestore's watch threads; callers are
expected to hand them off (see ``utils.live_state``) rather than do work inline.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Callable, Iterable, List, Mapping

from models import Payment, Student

log = logging.getLogger(__name__)

StudentsCallback = Callable[[List[Student]], None]
PaymentsCallback = Callable[[List[Payment]], None]
ErrorCallback = Callable[[Exception], None]


class LedgerError(RuntimeError):
    """Connectivity, permission or decoding failure at the ledger boundary."""


class Subscription:
    """Disposer for one live listener.

    ``unsubscribe`` is idempotent. Once it has returned, ``deliver`` refuses to
    forward anything, including callbacks already in flight on watch threads.
    """

    def __init__(self, label: str):
        self.label = label
        self._lock = threading.Lock()
        self._active = True
        self._watch: Any = None

    @property
    def active(self) -> bool:
        return self._active

    def attach(self, watch: Any) -> None:
        with self._lock:
            if self._active:
                self._watch = watch
                return
        # Disposed while the listener was being set up
        _close_watch(watch, self.label)

    def deliver(self, fn: Callable[..., None], *args: Any) -> bool:
        if not self._active:
            return False
        fn(*args)
        return True

    def unsubscribe(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
            watch, self._watch = self._watch, None
        if watch is not None:
            _close_watch(watch, self.label)

    def __call__(self) -> None:
        self.unsubscribe()

    def __repr__(self):
        state = "active" if self._active else "closed"
        return f"<Subscription {self.label} {state}>"


def _close_watch(watch: Any, label: str) -> None:
    try:
        watch.unsubscribe()
    except Exception:
        log.warning("Failed to close listener %s", label, exc_info=True)


def _decode_students(docs: Iterable[Any]) -> List[Student]:
    seen: set[str] = set()
    out: List[Student] = []
    for doc in docs:
        if doc.id in seen:
            continue
        seen.add(doc.id)
        out.append(Student.from_document(doc.id, doc.to_dict()))
    return out


def _decode_payments(docs: Iterable[Any]) -> List[Payment]:
    return [Payment.from_document(doc.id, doc.to_dict()) for doc in docs]


class FirestoreLedger:
    """Live listeners over ``students`` and ``students/{id}/payments``."""

    def __init__(self, project_id: str, credentials_path: str | None = None, client: Any = None):
        self.project_id = project_id
        self.credentials_path = credentials_path
        self._client = client
        self._client_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "FirestoreLedger":
        return cls(
            project_id=cfg.get("FIREBASE_PROJECT_ID", ""),
            credentials_path=cfg.get("GOOGLE_APPLICATION_CREDENTIALS") or None,
        )

    def _get_client(self):
        with self._client_lock:
            if self._client is None:
                from google.cloud import firestore
                from google.oauth2 import service_account

                creds = None
                path = self.credentials_path
                if path and os.path.exists(path):
                    creds = service_account.Credentials.from_service_account_file(path)
                # credentials=None -> Application Default Credentials
                self._client = firestore.Client(project=self.project_id, credentials=creds)
            return self._client

    def _listen(self, label: str, collection_path: str, decode, on_change, on_error: ErrorCallback) -> Subscription:
        sub = Subscription(label)

        def _on_snapshot(docs, _changes, _read_time):
            if not sub.active:
                return
            try:
                items = decode(docs)
            except Exception as e:
                log.exception("Could not decode snapshot for %s", label)
                sub.deliver(on_error, LedgerError(f"{label}: {e}"))
                return
            sub.deliver(on_change, items)

        try:
            watch = self._get_client().collection(collection_path).on_snapshot(_on_snapshot)
        except Exception as e:
            log.error("Error listening to %s: %s", label, e)
            sub.deliver(on_error, LedgerError(f"{label}: {e}"))
            sub.unsubscribe()
            return sub
        sub.attach(watch)
        return sub

    def subscribe_students(self, on_change: StudentsCallback, on_error: ErrorCallback) -> Subscription:
        return self._listen("students", "students", _decode_students, on_change, on_error)

    def subscribe_payments(self, student_id: str, on_change: PaymentsCallback, on_error: ErrorCallback) -> Subscription:
        return self._listen(
            f"payments:{student_id}",
            f"students/{student_id}/payments",
            _decode_payments,
            on_change,
            on_error,
        )
