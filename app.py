import logging

from flask import Flask

from config import Config, ledger_is_configured
from extensions import limiter
from routes.ai_routes import ai_bp
from routes.dashboard_routes import dashboard_bp

app = Flask(__name__)

# Load configuration from Config (falls back to sensible defaults inside Config)
app.config.from_object(Config)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

limiter.init_app(app)

app.register_blueprint(dashboard_bp)
app.register_blueprint(ai_bp)


@app.template_filter("currency")
def format_currency(amount) -> str:
    try:
        value = float(amount or 0)
    except (TypeError, ValueError):
        value = 0.0
    return f"{value:,.2f} {app.config.get('CURRENCY', 'EGP')}"


@app.context_processor
def _inject_branding():
    return {
        "brand_name": app.config.get("BRAND_NAME", "Payment Insights"),
        "ledger_configured": ledger_is_configured(app.config),
    }


# Set modern security headers on every response (best effort, non-breaking)
@app.after_request
def _set_security_headers(resp):
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # CSP kept permissive because of inline scripts and the chart CDN
    csp = (
        "default-src 'self'; "
        "img-src 'self' data:; "
        "style-src 'self' 'unsafe-inline' https://cdn.tailwindcss.com; "
        "script-src 'self' 'unsafe-inline' https://cdn.tailwindcss.com https://cdn.jsdelivr.net; "
        "connect-src 'self'; "
        "frame-ancestors 'self'"
    )
    resp.headers.setdefault("Content-Security-Policy", csp)
    return resp


if __name__ == "__main__":
    app.run(debug=False, threaded=True)
