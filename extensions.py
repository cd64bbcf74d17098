from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# In-memory rate limiter (sufficient for single-instance deployments).
# Toggled per app through RATELIMIT_ENABLED / DISABLE_RATE_LIMITING.
limiter = Limiter(get_remote_address, storage_uri="memory://")
