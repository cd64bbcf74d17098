from __future__ import annotations

from collections.abc import Mapping

from flask import Blueprint, current_app, jsonify, request

from extensions import limiter
from utils.ai import (
    AssistantBusy,
    AssistantError,
    AssistantInputError,
    ai_is_configured,
    ai_provider,
    delay_input_for,
    draft_follow_up_message,
    follow_up_input_for,
    predict_payment_delay,
)
from utils.live_state import get_store


ai_bp = Blueprint("ai", __name__, url_prefix="/ai")


def _ai_limit() -> str:
    return current_app.config.get("AI_RATE_LIMIT", "20 per minute")


def _student_and_payments(student_id: str):
    store = get_store()
    if store is None:
        return None, []
    snap = store.snapshot()
    return snap.student(student_id), snap.payments_for(student_id)


def _failure(e: AssistantError):
    if isinstance(e, AssistantBusy):
        return jsonify({"ok": False, "error": str(e), "busy": True}), 409
    if isinstance(e, AssistantInputError):
        return jsonify({"ok": False, "error": str(e)}), 400
    current_app.logger.warning("Assistant request failed: %s", e)
    return jsonify({"ok": False, "error": str(e), "retry": True}), 502


@ai_bp.route("/status")
def ai_status():
    return jsonify({"ok": True, "configured": ai_is_configured(), "provider": ai_provider()})


@ai_bp.route("/predict-delay/<student_id>", methods=["POST"])
@limiter.limit(_ai_limit)
def predict_delay(student_id: str):
    """Predict whether the student is likely to pay late.

    Returns JSON ``{ok, result: {isDelayLikely, suggestedFollowUpDays, followUpMessage}}``.
    """
    student, payments = _student_and_payments(student_id)
    if student is None:
        return jsonify({"ok": False, "error": "Student not found"}), 404
    try:
        result = predict_payment_delay(delay_input_for(student, payments))
    except AssistantError as e:
        return _failure(e)
    return jsonify({"ok": True, "result": result.model_dump()})


@ai_bp.route("/follow-up/<student_id>", methods=["POST"])
@limiter.limit(_ai_limit)
def follow_up(student_id: str):
    """Draft a follow-up message.

    Expects JSON or form field ``expectedPaymentDate``.
    Returns JSON ``{ok, result: {message, urgency}}``.
    """
    payload = request.get_json(silent=True) or request.form or {}
    expected = payload.get("expectedPaymentDate") if isinstance(payload, Mapping) else None
    if not isinstance(expected, str) or not expected.strip():
        return jsonify({"ok": False, "error": "expectedPaymentDate is required"}), 400
    student, payments = _student_and_payments(student_id)
    if student is None:
        return jsonify({"ok": False, "error": "Student not found"}), 404
    try:
        result = draft_follow_up_message(follow_up_input_for(student, payments, expected.strip()))
    except AssistantError as e:
        return _failure(e)
    return jsonify({"ok": True, "result": result.model_dump()})
