"""
Rule synchronisation between appliances and the local cache.

Per-appliance refresh:
    start -> (force? skip : freshness check) -> [fresh: cache hit]
          -> network fetch -> [ok: normalize + dedup + store]
                           -> [failed: stale cache with warning | failure]

Results are returned as SyncResult values; errors never escape
``refresh``, ``refresh_all`` or ``get_rules``.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import pydantic
from pydantic import BaseModel

from .appliance_client import ApplianceClient
from .credential_store import CredentialStore
from .exceptions import ManagerError, RequestError, ServerNotFound
from .kv_store import KeyValueStore
from .rule_cache import RuleCache, load_settings
from .rules import dedup_rules

logger = logging.getLogger(__name__)

AUTO_SYNC_DISABLED = "Auto-sync is disabled"


class SyncResult(BaseModel):
    """Outcome of one appliance refresh."""

    success: bool
    data: Optional[Dict[str, Any]] = None
    from_cache: bool = False
    warning: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "SyncResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "fromCache": self.from_cache}
        if self.data is not None:
            result["data"] = self.data
        if self.warning:
            result["warning"] = self.warning
        if self.error:
            result["error"] = self.error
        return result


class SyncEngine:
    """Fetches appliance rules and keeps the rule cache current."""

    def __init__(
        self,
        store: KeyValueStore,
        credentials: CredentialStore,
        rule_cache: RuleCache,
        client: ApplianceClient,
    ):
        self._store = store
        self._credentials = credentials
        self._rule_cache = rule_cache
        self._client = client

    async def refresh(self, appliance_id: str, force: bool = False) -> SyncResult:
        """Refresh rules for one appliance."""
        try:
            server = await self._credentials.get(appliance_id)
            if server is None:
                raise ServerNotFound(appliance_id)

            logger.debug(f"Refreshing rules for server: {server.name} ({appliance_id})")
            settings = await load_settings(self._store)

            if not force and not settings.prefer_latest:
                if await self._rule_cache.is_fresh(appliance_id):
                    cached = await self._rule_cache.get(appliance_id)
                    return SyncResult(success=True, data=cached.to_dict(), from_cache=True)

            try:
                rules = await self._client.get_user_rules(server)
            except RequestError as e:
                cached = await self._rule_cache.get(appliance_id)
                if cached is None:
                    raise
                logger.warning(
                    f"Network fetch failed for server {appliance_id}, using stale cache: {e}"
                )
                return SyncResult(
                    success=True,
                    data=cached.to_dict(),
                    from_cache=True,
                    warning=f"Using cached data due to network error: {e}",
                )

            deduped = dedup_rules(rules)
            entry = await self._rule_cache.set(appliance_id, {
                "rules": deduped,
                "count": len(deduped),
                "ttlMinutes": settings.cache_ttl_minutes,
            })
            logger.debug(f"Rules fetched for {server.name}: {len(deduped)}")
            return SyncResult(success=True, data=entry.to_dict(), from_cache=False)

        except ManagerError as e:
            logger.error(f"Failed to refresh server {appliance_id}: {e}")
            return SyncResult.failure(str(e))
        except pydantic.ValidationError as e:
            logger.error(f"Invalid data while refreshing server {appliance_id}: {e}")
            return SyncResult.failure(f"Invalid data: {e.error_count()} validation error(s)")

    async def refresh_all(self, force: bool = False) -> Dict[str, Any]:
        """
        Refresh every appliance, one at a time, in stored order.

        Returns:
            {"success": bool, "results": {id: result}} or
            {"success": False, "error": "..."} when skipped or failed
        """
        try:
            settings = await load_settings(self._store)
            if not force and not settings.auto_sync:
                return {"success": False, "error": AUTO_SYNC_DISABLED}

            servers = await self._credentials.list()
            results: Dict[str, Dict[str, Any]] = {}

            for server in servers:
                results[server.id] = (await self.refresh(server.id, force=force)).to_dict()

            any_success = any(r["success"] for r in results.values())
            logger.info(
                f"Refreshed {len(results)} servers "
                f"({sum(1 for r in results.values() if r['success'])} succeeded)"
            )
            return {"success": any_success, "results": results}

        except (ManagerError, pydantic.ValidationError) as e:
            logger.error(f"Failed to refresh all servers: {e}")
            return {"success": False, "error": str(e)}

    async def get_rules(self, appliance_id: str) -> SyncResult:
        """Rules for display, chosen by the preferLatest setting."""
        settings = await load_settings(self._store)

        if settings.prefer_latest:
            logger.debug(f"preferLatest on, trying network first for {appliance_id}")
            return await self.refresh(appliance_id, force=False)

        if await self._rule_cache.is_fresh(appliance_id):
            cached = await self._rule_cache.get(appliance_id)
            age = await self._rule_cache.age_seconds(appliance_id)
            logger.debug(f"Cache hit for {appliance_id}: age={age:.1f}s rules={cached.count}")
            return SyncResult(success=True, data=cached.to_dict(), from_cache=True)

        logger.debug(f"Cache miss for {appliance_id}, fetching from network")
        return await self.refresh(appliance_id, force=True)

    async def run_periodic(
        self,
        interval: float,
        shutdown: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Run ``refresh_all`` every ``interval`` seconds until ``shutdown`` is set.

        Passes skipped because auto-sync is off are logged at debug level.
        """
        shutdown = shutdown or asyncio.Event()
        logger.info(f"Periodic sync started (interval={interval}s)")

        while not shutdown.is_set():
            result = await self.refresh_all(force=False)
            if result.get("error") == AUTO_SYNC_DISABLED:
                logger.debug("Periodic sync skipped: auto-sync is disabled")
            elif not result["success"]:
                logger.warning(f"Periodic sync pass failed: {result.get('error') or 'no server refreshed'}")

            try:
                await asyncio.wait_for(shutdown.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Periodic sync stopped")
