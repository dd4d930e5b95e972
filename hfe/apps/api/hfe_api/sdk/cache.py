"""Client-side entitlement cache.

A short-TTL, per-device cache of the entitlement query result. It is a latency
optimization only: the webhook-updated store is the source of truth, and an
entry may be stale for at most `ttl` seconds. Callers invalidate (or pass
force_refresh=True) after a successful purchase, a checkout redirect return,
an explicit cancellation, or a pushed status change.
"""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from hfe_api.config.env import CACHE_TTL_MAX, CACHE_TTL_MIN, get_entitlement_cache_ttl

logger = logging.getLogger(__name__)

EntitlementFetcher = Callable[[str], Awaitable[dict]]


@dataclass
class _Entry:
    value: dict
    fetched_at: float


class EntitlementCache:
    def __init__(
        self,
        fetcher: EntitlementFetcher,
        ttl: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl is None:
            ttl = get_entitlement_cache_ttl()
        if not CACHE_TTL_MIN <= ttl <= CACHE_TTL_MAX:
            raise ValueError(f"ttl must be within [{CACHE_TTL_MIN}, {CACHE_TTL_MAX}], got {ttl}")
        self._fetcher = fetcher
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def _fresh(self, user_id: str) -> Optional[dict]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.ttl:
            return None
        return entry.value

    async def query(self, user_id: str, force_refresh: bool = False) -> dict:
        """Entitlement view for user_id; a backend call happens only on miss,
        expiry, or force_refresh.

        Fetch errors propagate and leave any existing entry untouched.
        """
        if not force_refresh:
            cached = self._fresh(user_id)
            if cached is not None:
                return cached

        value = await self._fetcher(user_id)
        self._entries[user_id] = _Entry(value=value, fetched_at=self._clock())
        logger.debug(
            "ENTITLEMENT_CACHE_REFRESHED",
            extra={"user_id": user_id, "forced": force_refresh, "status": value.get("status")},
        )
        return value

    def invalidate(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()
