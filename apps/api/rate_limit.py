from slowapi import Limiter
from slowapi.util import get_remote_address

from config import get_settings

settings = get_settings()

# Shared by the app (default limit) and the auth routes (stricter per-route limits)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.default_rate_limit],
    enabled=settings.rate_limit_enabled,
)
