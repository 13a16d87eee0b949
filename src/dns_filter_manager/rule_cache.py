"""
Per-appliance rule cache with TTL freshness.

Entries live under the ``cache`` key as ``{appliance_id: entry}``. An
entry is replaced wholesale on every successful sync and survives failed
syncs so a stale copy is always available as a fallback.

Freshness is judged against the TTL in the *current* settings; the TTL
captured in the entry at write time is kept only for diagnostics.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .kv_store import KeyValueStore
from .models import RuleCacheEntry, Settings, DEFAULT_SETTINGS, utc_now

logger = logging.getLogger(__name__)

CACHE_KEY = "cache"
SETTINGS_KEY = "settings"


async def load_settings(store: KeyValueStore) -> Settings:
    """Stored settings merged over defaults."""
    stored = await store.get(SETTINGS_KEY) or {}
    return Settings.model_validate({**DEFAULT_SETTINGS, **stored})


async def update_settings(store: KeyValueStore, updates: Mapping[str, Any]) -> Settings:
    """Merge updates into stored settings and persist the result."""
    current = await load_settings(store)
    updated = Settings.model_validate({**current.to_dict(), **dict(updates)})
    await store.set(SETTINGS_KEY, updated.to_dict())
    return updated


class RuleCache:
    """Snapshot cache of appliance user rules."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._clock = clock

    async def _load(self) -> Dict[str, Any]:
        cache = await self._store.get(CACHE_KEY)
        return cache if isinstance(cache, dict) else {}

    async def get(self, appliance_id: str) -> Optional[RuleCacheEntry]:
        cache = await self._load()
        raw = cache.get(appliance_id)
        if not raw:
            return None
        return RuleCacheEntry.model_validate(raw)

    async def set(
        self,
        appliance_id: str,
        data: Union[RuleCacheEntry, Mapping[str, Any]],
    ) -> RuleCacheEntry:
        """Store a new snapshot, stamping fetchedAt with the current time."""
        if isinstance(data, RuleCacheEntry):
            data = data.to_dict()

        entry = RuleCacheEntry.model_validate({
            **dict(data),
            "fetchedAt": self._clock().isoformat(),
        })

        cache = await self._load()
        cache[appliance_id] = entry.to_dict()
        await self._store.set(CACHE_KEY, cache)

        logger.debug(f"Cached {entry.count} rules for {appliance_id}")
        return entry

    async def clear(self, appliance_id: Optional[str] = None) -> bool:
        """Clear one entry, or every entry when no id is given."""
        if appliance_id:
            cache = await self._load()
            cache.pop(appliance_id, None)
        else:
            cache = {}

        await self._store.set(CACHE_KEY, cache)
        return True

    async def age_seconds(self, appliance_id: str) -> Optional[float]:
        """Age of the cached snapshot, or None if there is none."""
        entry = await self.get(appliance_id)
        if entry is None:
            return None
        fetched_at = entry.fetched_at_dt()
        if fetched_at is None:
            return None
        return (self._clock() - fetched_at).total_seconds()

    async def is_fresh(self, appliance_id: str) -> bool:
        entry = await self.get(appliance_id)
        if entry is None:
            return False

        fetched_at = entry.fetched_at_dt()
        if fetched_at is None:
            return False

        settings = await load_settings(self._store)
        ttl = timedelta(minutes=settings.cache_ttl_minutes)

        return (self._clock() - fetched_at) < ttl
