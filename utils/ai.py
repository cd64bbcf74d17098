"""Assistant gateway: payment-delay prediction and follow-up drafting.

Each operation validates its input, makes one model call, pulls the JSON
object out of the reply and validates that too. Anything that goes wrong is
raised as ``AssistantError`` so routes can report it and offer a retry.
"""
import os
import json
import time
import random
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Literal, Type, TypeVar

import requests
from pydantic import BaseModel, Field, StrictBool, ValidationError

log = logging.getLogger(__name__)

DEFAULT_MODEL = os.environ.get("AI_MODEL", os.environ.get("GEMINI_MODEL", "gemini-1.5-flash"))

# Simple, in‑process rate limiting across callers in this process
_last_call_ts: float | None = None
_rate_lock = threading.Lock()


class AssistantError(RuntimeError):
    """Recoverable assistant failure; the caller should offer a retry."""


class AssistantInputError(AssistantError):
    """The request did not match the operation's input schema."""


class AssistantBusy(AssistantError):
    """A call for the same operation and student is still outstanding."""


# --------------------------
# Schemas
# --------------------------

class PaymentHistoryEntry(BaseModel):
    paymentName: str
    paymentDate: str
    paymentType: str


class StudentDetails(BaseModel):
    cardName: str
    phone: str
    balance: float
    due: float


class PredictPaymentDelayInput(BaseModel):
    studentId: str = Field(min_length=1)
    paymentHistory: List[PaymentHistoryEntry]
    studentDetails: StudentDetails


class PredictPaymentDelayOutput(BaseModel):
    isDelayLikely: StrictBool
    suggestedFollowUpDays: int = Field(ge=0)
    followUpMessage: str = Field(min_length=1)


class DraftFollowUpMessageInput(BaseModel):
    studentId: str = Field(min_length=1)
    studentName: str
    amountDue: float
    paymentHistory: List[PaymentHistoryEntry]
    expectedPaymentDate: str = Field(min_length=1)


class DraftFollowUpMessageOutput(BaseModel):
    message: str = Field(min_length=1)
    urgency: Literal["high", "medium", "low"]


M = TypeVar("M", bound=BaseModel)


# --------------------------
# Provider plumbing
# --------------------------

def _respect_min_interval():
    """Sleep to respect AI_RPM or AI_MIN_INTERVAL if configured.

    - If AI_RPM is set (requests per minute), derive a minimum interval.
    - Otherwise, if AI_MIN_INTERVAL seconds is set, use that directly.
    """
    global _last_call_ts
    rpm = os.environ.get("AI_RPM")
    min_interval_env = os.environ.get("AI_MIN_INTERVAL")
    min_interval = None
    try:
        if rpm:
            r = float(rpm)
            if r > 0:
                min_interval = max(0.0, 60.0 / r)
        elif min_interval_env:
            min_interval = max(0.0, float(min_interval_env))
    except ValueError:
        min_interval = None

    if min_interval is None:
        return

    with _rate_lock:
        now = time.time()
        if _last_call_ts is None:
            _last_call_ts = now
            return
        elapsed = now - _last_call_ts
        if elapsed < min_interval:
            time.sleep(min_interval - elapsed)
        _last_call_ts = time.time()


def _parse_retry_after(headers: dict, default_delay: float) -> float:
    """Parse retry delay from headers, preferring standard Retry-After.

    Falls back to OpenAI x-ratelimit-reset-* headers, which may return values
    like '12ms' or '1s'. Returns a delay in seconds.
    """
    ra = headers.get("Retry-After")
    if ra:
        try:
            return max(default_delay, float(ra))
        except ValueError:
            pass
    for key in ("x-ratelimit-reset-requests", "x-ratelimit-reset-tokens"):
        val = headers.get(key)
        if not val:
            continue
        s = str(val).strip().lower()
        try:
            if s.endswith("ms"):
                return max(default_delay, float(s[:-2]) / 1000.0)
            if s.endswith("s"):
                return max(default_delay, float(s[:-1]))
            return max(default_delay, float(s))
        except ValueError:
            continue
    return default_delay


def _read_service_account_project(path: str | None) -> str | None:
    """Best‑effort read of project_id from a service account JSON file."""
    if not path or not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    s = (data.get("project_id") or "").strip()
    return s or None


def _resolve_gcp_project() -> str | None:
    """VERTEX_PROJECT_ID, then GOOGLE_CLOUD_PROJECT, then the service account file."""
    env_project = (os.environ.get("VERTEX_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT") or "").strip()
    if env_project:
        return env_project
    return _read_service_account_project(os.environ.get("GOOGLE_APPLICATION_CREDENTIALS"))


def _has_vertex_config() -> bool:
    return bool(os.environ.get("VERTEX_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT"))


def ai_provider() -> str:
    """Return which AI provider is configured: 'vertex', 'gemini', 'openai' or 'none'."""
    if _has_vertex_config():
        return "vertex"
    if os.environ.get("GOOGLE_API_KEY"):
        return "gemini"
    if os.environ.get("OPENAI_API_KEY") or os.environ.get("AZURE_OPENAI_API_KEY"):
        return "openai"
    return "none"


def ai_is_configured() -> bool:
    return ai_provider() != "none"


def _gemini_model_name() -> str:
    g_model = os.environ.get("VERTEX_GEMINI_MODEL") or os.environ.get("GEMINI_MODEL") or "gemini-1.5-flash"
    if str(g_model).strip().lower() == "gemini-pro":
        g_model = "gemini-1.5-flash"
    return g_model


def _flatten(messages: List[Dict[str, str]]) -> str:
    # Gemini calls are stateless; roles become plain prefixes
    parts: List[str] = []
    for m in messages or []:
        role = (m.get("role") or "user").capitalize()
        parts.append(f"{role}: {(m.get('content') or '')}\n")
    return "".join(parts).strip()


def _response_text(resp) -> str:
    text = getattr(resp, "text", None)
    if text:
        return text
    try:
        return resp.candidates[0].content.parts[0].text or ""
    except (AttributeError, IndexError):
        return ""


def _vertex_generate(messages: List[Dict[str, str]]) -> str:
    """Generate text using Vertex AI Gemini models (ADC or a service account file)."""
    import vertexai
    from google.oauth2 import service_account
    from vertexai.generative_models import GenerativeModel

    project = _resolve_gcp_project()
    if not project:
        raise RuntimeError("Missing GCP project. Set VERTEX_PROJECT_ID or GOOGLE_CLOUD_PROJECT.")
    location = os.environ.get("VERTEX_LOCATION", "us-central1")
    creds = None
    sa_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    if sa_path and os.path.exists(sa_path):
        creds = service_account.Credentials.from_service_account_file(sa_path)
    vertexai.init(project=project, location=location, credentials=creds)
    model_obj = GenerativeModel(_gemini_model_name())
    return _response_text(model_obj.generate_content(_flatten(messages)))


def _gemini_generate(messages: List[Dict[str, str]]) -> str:
    import google.generativeai as genai

    genai.configure(api_key=os.environ["GOOGLE_API_KEY"])
    model_obj = genai.GenerativeModel(_gemini_model_name())
    return _response_text(model_obj.generate_content(_flatten(messages)))


def _openai_chat(messages: List[Dict[str, str]], model: str = DEFAULT_MODEL, temperature: float = 0.2) -> str:
    """Azure OpenAI or OpenAI Chat Completions with retry/backoff."""
    azure_key = os.environ.get("AZURE_OPENAI_API_KEY")
    if azure_key:
        endpoint = (os.environ.get("AZURE_OPENAI_ENDPOINT") or "").rstrip("/")
        deployment = os.environ.get("AZURE_OPENAI_DEPLOYMENT") or model
        api_version = os.environ.get("AZURE_OPENAI_API_VERSION") or "2024-06-01"
        url = f"{endpoint}/openai/deployments/{deployment}/chat/completions?api-version={api_version}"
        headers = {"Content-Type": "application/json", "api-key": azure_key}
        payload = {"messages": messages, "temperature": temperature}
    else:
        key = os.environ.get("OPENAI_API_KEY")
        base = (os.environ.get("OPENAI_BASE_URL") or "https://api.openai.com/v1").rstrip("/")
        url = f"{base}/chat/completions"
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {key}"}
        payload = {"model": os.environ.get("OPENAI_MODEL", "gpt-4o-mini"), "messages": messages, "temperature": temperature}

    max_retries = int(os.environ.get("OPENAI_MAX_RETRIES", "3"))
    backoff_base = float(os.environ.get("OPENAI_BACKOFF_BASE", "0.5"))
    timeout = int(os.environ.get("OPENAI_TIMEOUT", "60"))

    last_err: Exception | None = None
    for attempt in range(max_retries + 1):
        try:
            resp = requests.post(url, headers=headers, data=json.dumps(payload), timeout=timeout)
            if resp.status_code in (429, 500, 502, 503, 504) and attempt < max_retries:
                delay = _parse_retry_after(resp.headers, backoff_base * (2 ** attempt))
                time.sleep(delay + random.uniform(0, 0.25))
                continue
            resp.raise_for_status()
            data = resp.json()
            return data.get("choices", [{}])[0].get("message", {}).get("content", "")
        except requests.RequestException as e:
            last_err = e
            if attempt < max_retries:
                time.sleep(backoff_base * (2 ** attempt) + random.uniform(0, 0.5))
                continue
            break
    if last_err:
        raise last_err
    raise RuntimeError("AI request failed after retries")


def _chat(messages: List[Dict[str, str]]) -> str:
    """Send one chat exchange to whichever provider is configured."""
    _respect_min_interval()
    provider = ai_provider()
    if provider == "vertex":
        return _vertex_generate(messages)
    if provider == "gemini":
        return _gemini_generate(messages)
    if provider == "openai":
        return _openai_chat(messages)
    raise AssistantError("AI not configured. Set VERTEX_PROJECT_ID, GOOGLE_API_KEY or OPENAI_API_KEY.")


# --------------------------
# In-flight tracking
# --------------------------

class InFlightTracker:
    """At most one outstanding call per key; a second caller is refused."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: set = set()

    @contextmanager
    def claim(self, key):
        with self._lock:
            if key in self._keys:
                raise AssistantBusy("An analysis for this student is already running.")
            self._keys.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._keys.discard(key)

    def is_busy(self, key) -> bool:
        with self._lock:
            return key in self._keys


in_flight = InFlightTracker()


# --------------------------
# Operations
# --------------------------

PREDICT_DELAY_PROMPT = """You are an AI assistant that analyzes student payment patterns and predicts potential delays.

Based on the student's payment history and details, determine if a payment delay is likely. If so, suggest a follow-up time and craft a message to send to the student.

Student Details:
Name: {name}
Phone: {phone}
Balance: {balance}
Due: {due}

Payment History:
{history}

Consider these factors when predicting payment delays:
* Consistency of payments
* Amount currently due
* Student's payment history
"""

PREDICT_DELAY_FORMAT = (
    "Return STRICT JSON with keys: isDelayLikely (boolean), "
    "suggestedFollowUpDays (non-negative integer), followUpMessage (string). No other text."
)

FOLLOW_UP_PROMPT = """You are an AI assistant tasked with drafting personalized follow-up messages to students regarding their payments.

Based on the student's payment history, current amount due, and expected payment date, draft a follow-up message that encourages timely payment.

Student ID: {student_id}
Student Name: {name}
Amount Due: {amount_due}
Payment History:
{history}
Expected Payment Date: {expected}

Analyze the payment history to determine the urgency of the message. If the student has a history of late payments or a large amount due, set the urgency to "high". If the student usually pays on time, but the payment is slightly delayed, set the urgency to "medium" or "low".

The message should be polite, professional, and encouraging. Clearly state the amount due and the expected payment date. Suggest possible payment plans if the amount is large.
"""

FOLLOW_UP_FORMAT = (
    "Return STRICT JSON with keys: message (string), urgency (one of \"high\", \"medium\", \"low\"). No other text."
)


def _history_lines(history: Iterable[PaymentHistoryEntry]) -> str:
    lines = [
        f"Payment Name: {h.paymentName}, Payment Date: {h.paymentDate}, Payment Type: {h.paymentType}"
        for h in history
    ]
    return "\n".join(lines) or "(no payments recorded)"


def _validate(model: Type[M], payload: Any) -> M:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise AssistantInputError(f"Invalid request: {e.errors()[0].get('msg', 'validation failed')}") from e


def _extract_json(text: str) -> Dict[str, Any]:
    start = (text or "").find("{")
    end = (text or "").rfind("}")
    if start == -1 or end <= start:
        raise AssistantError("The assistant did not return a structured answer.")
    try:
        obj = json.loads(text[start : end + 1])
    except ValueError as e:
        raise AssistantError("The assistant returned malformed JSON.") from e
    if not isinstance(obj, dict):
        raise AssistantError("The assistant returned an unexpected payload.")
    return obj


def _ask(prompt: str, fmt: str, output: Type[M]) -> M:
    messages = [
        {"role": "system", "content": fmt},
        {"role": "user", "content": prompt},
    ]
    try:
        text = _chat(messages)
    except AssistantError:
        raise
    except Exception as e:
        log.warning("Assistant call failed: %s", e)
        raise AssistantError("The assistant is unavailable right now. Please try again.") from e
    try:
        return output.model_validate(_extract_json(text))
    except ValidationError as e:
        log.warning("Assistant reply failed validation: %s", e)
        raise AssistantError("The assistant returned an answer in an unexpected shape.") from e


def predict_payment_delay(payload) -> PredictPaymentDelayOutput:
    data = _validate(PredictPaymentDelayInput, payload)
    prompt = PREDICT_DELAY_PROMPT.format(
        name=data.studentDetails.cardName,
        phone=data.studentDetails.phone,
        balance=data.studentDetails.balance,
        due=data.studentDetails.due,
        history=_history_lines(data.paymentHistory),
    )
    with in_flight.claim(("predict-delay", data.studentId)):
        return _ask(prompt, PREDICT_DELAY_FORMAT, PredictPaymentDelayOutput)


def draft_follow_up_message(payload) -> DraftFollowUpMessageOutput:
    data = _validate(DraftFollowUpMessageInput, payload)
    prompt = FOLLOW_UP_PROMPT.format(
        student_id=data.studentId,
        name=data.studentName,
        amount_due=data.amountDue,
        history=_history_lines(data.paymentHistory),
        expected=data.expectedPaymentDate,
    )
    with in_flight.claim(("follow-up", data.studentId)):
        return _ask(prompt, FOLLOW_UP_FORMAT, DraftFollowUpMessageOutput)


def delay_input_for(student, payments) -> Dict[str, Any]:
    """Build the delay-prediction request for a roster student."""
    return {
        "studentId": student.id,
        "paymentHistory": [p.history_entry() for p in payments],
        "studentDetails": {
            "cardName": student.fullName,
            "phone": student.phone,
            "balance": student.totalPaid,
            "due": student.totalDue,
        },
    }


def follow_up_input_for(student, payments, expected_payment_date: str) -> Dict[str, Any]:
    return {
        "studentId": student.id,
        "studentName": student.fullName,
        "amountDue": student.totalDue,
        "paymentHistory": [p.history_entry() for p in payments],
        "expectedPaymentDate": expected_payment_date,
    }
