"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in route modules that
apply per-route limits with @limiter.limit().

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module would
get its own isolated counter and rate limits would never trigger.

This limiter keys on the remote address only. The auth flows need
content-derived keys (user id, transfer token) and use the injected
auth.ratelimit.RateLimiter on app.state instead.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)
