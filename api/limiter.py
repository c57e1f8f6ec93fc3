"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in route modules that
need a tighter per-route limit with @limiter.limit().

Using a single shared instance ensures all routes share the same in-memory
counter store. default_limits applies API_RATE_LIMIT to every route that has
no explicit limit.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    default_limits=[get_settings().api_rate_limit],
)
