"""Access-token caching for processor adapters.

Adapters receive a ``TokenCache`` instead of keeping tokens in module state, so
one process shares a single cache (held on ``app.state`` or the worker context)
and tests can substitute their own.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable


class TokenCache(ABC):
    """Get-or-refresh store for short-lived bearer tokens."""

    @abstractmethod
    async def get_or_refresh(
        self,
        key: str,
        fetch: Callable[[], Awaitable[str]],
        force: bool = False,
    ) -> str:
        """Return the cached token for ``key``, calling ``fetch`` when stale or forced."""
        pass  # pragma: no cover


class InMemoryTokenCache(TokenCache):
    """Process-local cache that reuses each token for ``ttl_seconds``.

    The reuse window should sit safely inside the token's real lifetime
    (e.g. 50 minutes of a 60 minute token). Two concurrent misses may both
    fetch; the later write wins, which only costs an extra token exchange.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    async def get_or_refresh(
        self,
        key: str,
        fetch: Callable[[], Awaitable[str]],
        force: bool = False,
    ) -> str:
        entry = self._entries.get(key)
        if entry is not None and not force:
            token, expires_at = entry
            if self._clock() < expires_at:
                return token

        token = await fetch()
        self._entries[key] = (token, self._clock() + self.ttl_seconds)
        return token
