"""In-process cache for OAuth bearer tokens"""

import time
from typing import Callable, Optional


class AccessTokenCache:
    """
    Holds one bearer token and the moment it stops being usable.

    The token is treated as expired `refresh_margin_seconds` before the
    rail's own expiry to absorb clock skew and request latency.

    There is no lock: two requests that find the cache empty at the same time
    will both fetch a token and the later one wins. Daraja hands out
    independent valid tokens, so a duplicate fetch costs one extra HTTP call
    and nothing else. That is accepted in exchange for never blocking request
    handlers on each other.
    """

    def __init__(self, refresh_margin_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def get(self) -> Optional[str]:
        """Cached token, or None when missing or due for refresh"""
        if self._token is not None and self._clock() < self._expires_at:
            return self._token
        return None

    def store(self, token: str, expires_in: float) -> None:
        self._token = token
        self._expires_at = self._clock() + max(expires_in - self.refresh_margin_seconds, 0.0)

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0
