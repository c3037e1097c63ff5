"""
auth/ratelimit.py -- Fixed-window request limiter keyed by arbitrary strings.

The HTTP-level slowapi limiter (api/limiter.py) keys on the remote address
only. The auth flows need keys built from request content -- "webapp:<ip>",
"transfer:create:<user_id>", "transfer:consume:token:<hash>" -- so they use
this object instead, built on the same `limits` storage slowapi runs on.

Semantics (fixed window, per key):
  - first hit, or first hit once the window has elapsed: counter starts at 1,
    window reset time = now + window_ms, call allowed;
  - otherwise: blocked when the window already holds `limit` calls, else
    counted and allowed.
The window is exactly window_ms long. Whole-second windows work on every
`limits` backend; sub-second windows need one with fractional expiry
(memory://).
Up to 2x limit calls can pass across a window boundary. That is acceptable
for abuse deterrence; this is not a billing quota.

One RateLimiter is constructed per process in the API lifespan and stored on
app.state.rate_limiter. Tests build their own isolated instances. The
storage URI defaults to memory:// (process-local); pointing it at a shared
backend (e.g. redis://) shares counters across instances without touching
call sites.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging

from limits.storage import storage_from_string

logger = logging.getLogger("tutorauth.ratelimit")

_KEY_PREFIX = "tutorauth/fixed-window"


class RateLimiter:
    """Injectable fixed-window limiter.

    Usage:
        limiter = RateLimiter()
        if limiter.is_rate_limited(f"webapp:{ip}", limit=30, window_ms=60_000):
            ...  # respond 429
    """

    def __init__(self, storage_uri: str = "memory://") -> None:
        self._storage = storage_from_string(storage_uri)

    def is_rate_limited(self, key: str, limit: int, window_ms: int) -> bool:
        """Record one call for key and return True if it must be blocked.

        The storage sets the expiry only when the counter is created, so the
        window is anchored on the first call and never extended by later ones.
        """
        if window_ms <= 0:
            raise ValueError(f"window_ms must be positive, got {window_ms}")
        expiry = window_ms // 1000 if window_ms % 1000 == 0 else window_ms / 1000
        count = self._storage.incr(f"{_KEY_PREFIX}/{window_ms}/{key}", expiry)
        blocked = count > max(1, limit)
        if blocked:
            logger.info("Rate limit hit (key=%s limit=%d window=%dms)", key.split(":", 1)[0], limit, window_ms)
        return blocked

    def reset(self) -> None:
        """Drop every counter."""
        self._storage.reset()
