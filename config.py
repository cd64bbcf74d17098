import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on", "y")


# Values the dashboard cannot connect without. Anything else is optional.
REQUIRED_LEDGER_KEYS = ("FIREBASE_API_KEY", "FIREBASE_PROJECT_ID")


class Config:
    # --------------------------
    # 🔹 Flask Configuration
    # --------------------------
    SECRET_KEY = os.environ.get("SECRET_KEY", "secret123")
    PROPAGATE_EXCEPTIONS = True

    # --------------------------
    # 🔹 Firestore ledger
    # --------------------------
    FIREBASE_API_KEY = os.environ.get("FIREBASE_API_KEY", "")
    FIREBASE_AUTH_DOMAIN = os.environ.get("FIREBASE_AUTH_DOMAIN", "")
    FIREBASE_PROJECT_ID = os.environ.get("FIREBASE_PROJECT_ID", "")
    FIREBASE_STORAGE_BUCKET = os.environ.get("FIREBASE_STORAGE_BUCKET", "")
    FIREBASE_MESSAGING_SENDER_ID = os.environ.get("FIREBASE_MESSAGING_SENDER_ID", "")
    FIREBASE_APP_ID = os.environ.get("FIREBASE_APP_ID", "")
    # Service account JSON; when empty the client falls back to ADC
    GOOGLE_APPLICATION_CREDENTIALS = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "")
    # Start Firestore listeners on first request (off in tests)
    LEDGER_AUTOSTART = _flag("LEDGER_AUTOSTART", "1")

    # --------------------------
    # 🔹 Dashboard
    # --------------------------
    # Calendar days for the daily/monthly reports are taken in this zone
    DASHBOARD_TIMEZONE = os.environ.get("DASHBOARD_TIMEZONE", "Africa/Cairo")
    CURRENCY = os.environ.get("CURRENCY", "EGP")
    BRAND_NAME = os.environ.get("BRAND_NAME", "Payment Insights")
    # Seconds an SSE connection waits for a change before sending a keepalive
    STREAM_KEEPALIVE_SECONDS = int(os.environ.get("STREAM_KEEPALIVE_SECONDS", "15"))

    # --------------------------
    # 🔹 Assistant (AI)
    # --------------------------
    AI_RATE_LIMIT = os.environ.get("AI_RATE_LIMIT", "20 per minute")
    RATELIMIT_ENABLED = not _flag("DISABLE_RATE_LIMITING")
    RATELIMIT_STORAGE_URI = "memory://"


def missing_ledger_keys(cfg=None) -> list[str]:
    """Return required ledger settings that are absent or blank."""
    source = cfg if cfg is not None else os.environ
    missing = []
    for key in REQUIRED_LEDGER_KEYS:
        val = source.get(key) if hasattr(source, "get") else getattr(source, key, None)
        if not (val or "").strip():
            missing.append(key)
    return missing


def ledger_is_configured(cfg=None) -> bool:
    return not missing_ledger_keys(cfg)
