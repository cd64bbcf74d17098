from __future__ import annotations

import json

from flask import (
    Blueprint,
    Response,
    abort,
    current_app,
    flash,
    jsonify,
    render_template,
    request,
    stream_with_context,
)

from config import REQUIRED_LEDGER_KEYS, missing_ledger_keys
from utils.aggregation import parse_amount
from utils.live_state import STATUS_LOADING, STATUS_UNCONFIGURED, StoreSnapshot, get_store
from utils.roster import DEFAULT_SORT, SORT_COLUMNS, UnknownSortKey, payment_status, roster_view


dashboard_bp = Blueprint("dashboard", __name__)

TABS = ("overview", "daily", "monthly")


def _current_snapshot() -> StoreSnapshot | None:
    if missing_ledger_keys(current_app.config):
        return None
    store = get_store()
    if store is None:
        return StoreSnapshot(version=0, status=STATUS_LOADING)
    return store.snapshot()


def _roster_args():
    q = (request.args.get("q") or "").strip()
    key = request.args.get("sort") or DEFAULT_SORT[0]
    order = (request.args.get("order") or DEFAULT_SORT[1]).lower()
    return q, key, order


def _student_row(student) -> dict:
    return {**student.to_dict(), "status": payment_status(student)}


def _payment_row(payment) -> dict:
    return {**payment.to_dict(), "amount": parse_amount(payment.paymentName)}


def _snapshot_payload(snap: StoreSnapshot) -> dict:
    return {
        "ok": True,
        "version": snap.version,
        "status": snap.status,
        "errors": snap.errors,
        "views": snap.views.to_dict() if snap.views is not None else None,
    }


def _unconfigured_payload() -> dict:
    return {"ok": True, "status": STATUS_UNCONFIGURED, "missing": missing_ledger_keys(current_app.config)}


@dashboard_bp.route("/")
def index():
    missing = missing_ledger_keys(current_app.config)
    if missing:
        return render_template("setup.html", missing=missing, required=REQUIRED_LEDGER_KEYS)

    snap = _current_snapshot()
    q, key, order = _roster_args()
    try:
        roster = roster_view(snap.students, q, key, order)
    except UnknownSortKey as e:
        flash(str(e), "warning")
        key, order = DEFAULT_SORT
        roster = roster_view(snap.students, q, key, order)

    tab = request.args.get("tab") or "overview"
    if tab not in TABS:
        tab = "overview"
    return render_template(
        "dashboard.html",
        snap=snap,
        status=snap.status,
        views=snap.views,
        roster=roster,
        statuses={s.id: payment_status(s) for s in roster},
        q=q,
        sort_key=key,
        sort_order=order,
        sort_columns=list(SORT_COLUMNS),
        tab=tab,
    )


@dashboard_bp.route("/students/<student_id>")
def student_detail(student_id: str):
    """Detail panel fragment, loaded into the side sheet on row click."""
    snap = _current_snapshot()
    if snap is None:
        abort(404)
    student = snap.student(student_id)
    if student is None:
        abort(404)
    payments = snap.payments_for(student_id)
    return render_template(
        "partials/student_detail.html",
        student=student,
        status=payment_status(student),
        payments=[_payment_row(p) for p in payments],
    )


@dashboard_bp.route("/partials/roster")
def roster_rows():
    """Roster table body for the current filter and sort, re-fetched on live updates."""
    snap = _current_snapshot()
    if snap is None:
        abort(404)
    q, key, order = _roster_args()
    try:
        roster = roster_view(snap.students, q, key, order)
    except UnknownSortKey:
        abort(400)
    return render_template(
        "partials/roster_rows.html",
        roster=roster,
        statuses={s.id: payment_status(s) for s in roster},
        status=snap.status,
    )


@dashboard_bp.route("/partials/daily")
def daily_fragment():
    snap = _current_snapshot()
    if snap is None:
        abort(404)
    return render_template("partials/daily_report.html", views=snap.views)


@dashboard_bp.route("/api/dashboard")
def api_dashboard():
    snap = _current_snapshot()
    if snap is None:
        return jsonify(_unconfigured_payload())
    return jsonify(_snapshot_payload(snap))


@dashboard_bp.route("/api/students")
def api_students():
    snap = _current_snapshot()
    if snap is None:
        return jsonify({**_unconfigured_payload(), "students": []})
    q, key, order = _roster_args()
    try:
        roster = roster_view(snap.students, q, key, order)
    except UnknownSortKey as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    return jsonify({"ok": True, "status": snap.status, "students": [_student_row(s) for s in roster]})


@dashboard_bp.route("/api/students/<student_id>/payments")
def api_student_payments(student_id: str):
    snap = _current_snapshot()
    if snap is None or snap.student(student_id) is None:
        return jsonify({"ok": False, "error": "Student not found"}), 404
    payments = snap.payments_for(student_id)
    return jsonify({"ok": True, "payments": [_payment_row(p) for p in payments]})


@dashboard_bp.route("/api/stream")
def api_stream():
    """Server-Sent Events: one ``dashboard`` event per published store version."""
    if missing_ledger_keys(current_app.config):
        return jsonify(_unconfigured_payload())
    store = get_store()
    if store is None:
        return jsonify({"ok": False, "error": "Ledger listeners are not running"}), 503
    keepalive = float(current_app.config.get("STREAM_KEEPALIVE_SECONDS", 15))
    try:
        since = int(request.args.get("since", "-1"))
    except ValueError:
        since = -1

    def _events():
        version = since
        while True:
            snap = store.wait_for_change(version, keepalive)
            if snap.version == version:
                yield ": keepalive\n\n"
                continue
            version = snap.version
            yield f"event: dashboard\ndata: {json.dumps(_snapshot_payload(snap))}\n\n"

    return Response(
        stream_with_context(_events()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@dashboard_bp.route("/healthz")
def healthz():
    snap = _current_snapshot()
    if snap is None:
        return jsonify(_unconfigured_payload())
    return jsonify({"ok": True, "status": snap.status, "version": snap.version, "errors": snap.errors})
