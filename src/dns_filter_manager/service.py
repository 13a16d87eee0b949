"""
Message boundary for UI and CLI callers.

``ManagerService.handle(action, data)`` takes a named operation plus an
argument object and always resolves to one of:

    {"success": True, "data": <result>}
    {"success": False, "error": "<short message>"}

Results are plain JSON-compatible values. Exceptions and stack traces
never cross this boundary.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import urlsplit

import pydantic

from .context import RuntimeContext
from .credential_store import SERVERS_KEY
from .exceptions import ManagerError, ServerNotFound, ValidationError
from .models import ApplianceRecord, DEFAULT_SETTINGS
from .rule_cache import CACHE_KEY, SETTINGS_KEY, load_settings, update_settings
from .rules import (
    dedup_rules,
    generate_allow_rule,
    generate_block_rule,
    get_rule_counts,
    merge_rules,
    parse_input_to_hostname,
)
from .sync_engine import SyncResult

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "dns_filter_manager"

GROUPS_KEY = "groups"
PROTECTION_STATUS_KEY = "protectionStatus"
DEBUG_MODE_KEY = "debugMode"

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


def validate_server(server: Dict[str, Any]) -> List[str]:
    """Required-field checks for an appliance record; returns error messages."""
    errors = []

    def blank(field: str) -> bool:
        value = server.get(field)
        return not isinstance(value, str) or not value.strip()

    if blank("name"):
        errors.append("Server name is required")

    if blank("host"):
        errors.append("Server host is required")
    else:
        try:
            parts = urlsplit(server["host"].strip())
            valid_url = bool(parts.scheme) and bool(parts.netloc)
        except ValueError:
            valid_url = False
        if not valid_url:
            errors.append("Server host must be a valid URL (e.g., https://192.168.1.1)")

    if blank("username"):
        errors.append("Username is required")

    if blank("password"):
        errors.append("Password is required")

    return errors


def set_debug_logging(enabled: bool) -> str:
    """Switch the package logger between DEBUG and ERROR; returns the level name."""
    level = logging.DEBUG if enabled else logging.ERROR
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
    return logging.getLevelName(level)


def _with_rule_counts(result: SyncResult) -> Dict[str, Any]:
    """SyncResult payload with allow/block/disabled counts added to its data."""
    payload = result.to_dict()
    if result.data is not None:
        payload["data"] = {
            **payload["data"],
            "ruleCounts": get_rule_counts(result.data.get("rules", [])),
        }
    return payload


def _require(data: Dict[str, Any], field: str) -> Any:
    value = data.get(field)
    if value is None or value == "":
        raise ValidationError([f"{field} is required"])
    return value


class ManagerService:
    """
    Dispatches named operations onto a RuntimeContext.

    Usage:
        service = ManagerService(create_context(config))
        await service.initialize()
        response = await service.handle("getServers")
    """

    def __init__(self, context: RuntimeContext):
        self.ctx = context
        self._background_tasks: Set["asyncio.Task[Any]"] = set()

        self._handlers: Dict[str, Handler] = {
            # Appliance records
            'getServers': self._handle_get_servers,
            'getServer': self._handle_get_server,
            'saveServer': self._handle_save_server,
            'deleteServer': self._handle_delete_server,
            # Settings
            'getSettings': self._handle_get_settings,
            'updateSettings': self._handle_update_settings,
            # Appliance API
            'testConnection': self._handle_test_connection,
            'getFilteringStatus': self._handle_get_filtering_status,
            'setRules': self._handle_set_rules,
            'getUserRules': self._handle_get_user_rules,
            'addRules': self._handle_add_rules,
            'removeRules': self._handle_remove_rules,
            'blockDomain': self._handle_block_domain,
            'allowDomain': self._handle_allow_domain,
            'getServerInfo': self._handle_get_server_info,
            'addFilterURL': self._handle_add_filter_url,
            'removeFilterURL': self._handle_remove_filter_url,
            'setFilteringConfig': self._handle_set_filtering_config,
            'refreshFilters': self._handle_refresh_filters,
            'checkHost': self._handle_check_host,
            'getQueryLog': self._handle_get_query_log,
            'getStats': self._handle_get_stats,
            # Protection
            'toggleProtection': self._handle_toggle_protection,
            'getProtectionStatus': self._handle_get_protection_status,
            # Sync
            'refreshServerRules': self._handle_refresh_server_rules,
            'refreshAllServers': self._handle_refresh_all_servers,
            'getServerRules': self._handle_get_server_rules,
            # Cache
            'getCache': self._handle_get_cache,
            'clearCache': self._handle_clear_cache,
            # Diagnostics
            'setDebugMode': self._handle_set_debug_mode,
        }

    @property
    def actions(self) -> List[str]:
        return sorted(self._handlers)

    async def initialize(self) -> None:
        """Seed missing top-level collections and apply the stored debug mode."""
        store = self.ctx.store
        seeded = []

        defaults = {
            SERVERS_KEY: [],
            GROUPS_KEY: [],
            SETTINGS_KEY: DEFAULT_SETTINGS,
            CACHE_KEY: {},
        }
        for key, default in defaults.items():
            if await store.get(key) is None:
                await store.set(key, default)
                seeded.append(key)

        if seeded:
            logger.info(f"Initialized storage keys: {', '.join(seeded)}")

        if await store.get(DEBUG_MODE_KEY):
            set_debug_logging(True)
            logger.debug("Debug mode restored from storage")

    async def handle(self, action: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run one named operation and wrap its outcome."""
        handler = self._handlers.get(action)
        if handler is None:
            return {"success": False, "error": f"Unknown action: {action}"}

        try:
            result = await handler(dict(data or {}))
            return {"success": True, "data": result}
        except ManagerError as e:
            logger.error(f"Error handling {action}: {e}")
            return {"success": False, "error": str(e)}
        except pydantic.ValidationError as e:
            logger.error(f"Invalid data for {action}: {e}")
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            return {"success": False, "error": ", ".join(messages)}
        except Exception as e:
            logger.exception(f"Unexpected error handling {action}")
            return {"success": False, "error": str(e) or type(e).__name__}

    async def wait_background(self) -> None:
        """Wait for protection toggles still running in the background."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _server(self, data: Dict[str, Any], field: str = "serverId") -> ApplianceRecord:
        server_id = _require(data, field)
        server = await self.ctx.credentials.get(server_id)
        if server is None:
            raise ServerNotFound(server_id)
        return server

    async def _cache_rules(self, server_id: str, rules: List[str]) -> Dict[str, Any]:
        """Write a just-pushed rule list to the cache so reads see it immediately."""
        settings = await load_settings(self.ctx.store)
        deduped = dedup_rules(rules)
        entry = await self.ctx.rule_cache.set(server_id, {
            "rules": deduped,
            "count": len(deduped),
            "ttlMinutes": settings.cache_ttl_minutes,
        })
        return entry.to_dict()

    # =========================================================================
    # Appliance records
    # =========================================================================

    async def _handle_get_servers(self, data: Dict) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in await self.ctx.credentials.list()]

    async def _handle_get_server(self, data: Dict) -> Optional[Dict[str, Any]]:
        record = await self.ctx.credentials.get(_require(data, "id"))
        return record.to_dict() if record else None

    async def _handle_save_server(self, data: Dict) -> Dict[str, Any]:
        server = data.get("server")
        if not isinstance(server, dict):
            raise ValidationError(["server is required"])

        server = dict(server)
        if not server.get("id"):
            server["id"] = str(uuid.uuid4())

        errors = validate_server(server)
        if errors:
            raise ValidationError(errors)

        server["host"] = server["host"].strip()
        saved = await self.ctx.credentials.save(server)
        return saved.to_dict()

    async def _handle_delete_server(self, data: Dict) -> bool:
        server_id = _require(data, "id")
        removed = await self.ctx.credentials.delete(server_id)

        status = await self.ctx.store.get(PROTECTION_STATUS_KEY) or {}
        if server_id in status:
            del status[server_id]
            await self.ctx.store.set(PROTECTION_STATUS_KEY, status)
        return removed

    # =========================================================================
    # Settings
    # =========================================================================

    async def _handle_get_settings(self, data: Dict) -> Dict[str, Any]:
        return (await load_settings(self.ctx.store)).to_dict()

    async def _handle_update_settings(self, data: Dict) -> Dict[str, Any]:
        updates = data.get("settings")
        if not isinstance(updates, dict):
            raise ValidationError(["settings is required"])
        return (await update_settings(self.ctx.store, updates)).to_dict()

    # =========================================================================
    # Appliance API
    # =========================================================================

    async def _handle_test_connection(self, data: Dict) -> Dict[str, Any]:
        return await self.ctx.client.test_connection(
            data.get("host") or "",
            data.get("username") or "",
            data.get("password") or "",
        )

    async def _handle_get_filtering_status(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        return (await self.ctx.client.get_filtering_status(server)).model_dump()

    async def _handle_set_rules(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        rules = data.get("rules")
        if not isinstance(rules, list):
            raise ValidationError(["rules must be a list"])

        await self.ctx.client.set_rules(server, rules)
        return await self._cache_rules(server.id, rules)

    async def _handle_get_user_rules(self, data: Dict) -> List[str]:
        server = await self._server(data)
        return await self.ctx.client.get_user_rules(server)

    async def _handle_add_rules(self, data: Dict) -> List[str]:
        server = await self._server(data)
        rules = data.get("rules")
        if not isinstance(rules, list):
            raise ValidationError(["rules must be a list"])

        merged = await self.ctx.client.add_rules(server, rules)
        await self._cache_rules(server.id, merged)
        return merged

    async def _handle_remove_rules(self, data: Dict) -> List[str]:
        server = await self._server(data)
        rules = data.get("rules")
        if not isinstance(rules, list):
            raise ValidationError(["rules must be a list"])

        remaining = await self.ctx.client.remove_rules(server, rules)
        await self._cache_rules(server.id, remaining)
        return remaining

    async def _handle_block_domain(self, data: Dict) -> Dict[str, Any]:
        return await self._add_domain_rule(data, generate_block_rule)

    async def _handle_allow_domain(self, data: Dict) -> Dict[str, Any]:
        return await self._add_domain_rule(data, generate_allow_rule)

    async def _add_domain_rule(
        self,
        data: Dict[str, Any],
        make_rule: Callable[[str], str],
    ) -> Dict[str, Any]:
        """
        Turn a URL or hostname into a block/allow rule and append it.

        An identical rule already on the appliance is not added twice.
        """
        server = await self._server(data)
        hostname = parse_input_to_hostname(data.get("domain"))
        if not hostname:
            raise ValidationError(["domain is required"])

        rule = make_rule(hostname)
        current = await self.ctx.client.get_user_rules(server)
        if rule in current:
            logger.info(f"Rule {rule} already present on {server.name}")
            return {"rule": rule, "added": False, "ruleCounts": get_rule_counts(current)}

        updated = merge_rules(current, [rule])
        await self.ctx.client.set_rules(server, updated)
        await self._cache_rules(server.id, updated)
        logger.info(f"Added rule {rule} to {server.name}")
        return {"rule": rule, "added": True, "ruleCounts": get_rule_counts(updated)}

    async def _handle_get_server_info(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        return (await self.ctx.client.get_server_info(server)).model_dump()

    async def _handle_add_filter_url(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        url = _require(data, "url")
        await self.ctx.client.add_filter_url(
            server, url, data.get("name") or url, whitelist=bool(data.get("whitelist", False))
        )
        return {"success": True}

    async def _handle_remove_filter_url(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        await self.ctx.client.remove_filter_url(
            server, _require(data, "url"), whitelist=bool(data.get("whitelist", False))
        )
        return {"success": True}

    async def _handle_set_filtering_config(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        config = data.get("config")
        if not isinstance(config, dict) or "enabled" not in config:
            raise ValidationError(["config.enabled is required"])

        await self.ctx.client.set_filtering_config(
            server, bool(config["enabled"]), config.get("interval")
        )
        return {"success": True}

    async def _handle_refresh_filters(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        return await self.ctx.client.refresh_filters(
            server, whitelist=bool(data.get("whitelist", False))
        )

    async def _handle_check_host(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        result = await self.ctx.client.check_host(server, _require(data, "name"))
        return {**result.model_dump(), "blocked": result.blocked}

    async def _handle_get_query_log(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        log = await self.ctx.client.get_query_log(
            server,
            limit=int(data.get("limit", 100)),
            offset=int(data.get("offset", 0)),
            search=data.get("search"),
            response_status=data.get("responseStatus"),
        )
        return log.model_dump()

    async def _handle_get_stats(self, data: Dict) -> Dict[str, Any]:
        server = await self._server(data)
        return (await self.ctx.client.get_stats(server)).model_dump()

    # =========================================================================
    # Protection
    # =========================================================================

    async def _handle_toggle_protection(self, data: Dict) -> Dict[str, Any]:
        """
        Record the requested state immediately, then push it to the appliance
        in the background. The cached state is reverted if the push fails.
        """
        server = await self._server(data)
        enabled = bool(data.get("enabled"))

        status = await self.ctx.store.get(PROTECTION_STATUS_KEY) or {}
        status[server.id] = enabled
        await self.ctx.store.set(PROTECTION_STATUS_KEY, status)

        task = asyncio.ensure_future(self._push_protection(server, enabled))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        logger.info(f"Protection {'enabled' if enabled else 'disabled'} for 1 server(s)")
        return {
            "success": True,
            "affectedServers": [{"id": server.id, "enabled": enabled}],
            "totalServers": 1,
        }

    async def _push_protection(self, server: ApplianceRecord, enabled: bool) -> None:
        try:
            await self.ctx.client.set_protection_enabled(server, enabled)
            logger.info(f"Protection {'enabled' if enabled else 'disabled'} for {server.name}")
        except Exception as e:
            logger.error(f"Failed to toggle protection for {server.name}: {e}")
            status = await self.ctx.store.get(PROTECTION_STATUS_KEY) or {}
            status[server.id] = not enabled
            await self.ctx.store.set(PROTECTION_STATUS_KEY, status)

    async def _handle_get_protection_status(self, data: Dict) -> Dict[str, Any]:
        server_id = _require(data, "serverId")
        status = await self.ctx.store.get(PROTECTION_STATUS_KEY) or {}

        if not data.get("force") and server_id in status:
            return {"success": True, "enabled": status[server_id], "fromCache": True}

        server = await self._server(data)
        enabled = await self.ctx.client.get_protection_status(server)

        status = await self.ctx.store.get(PROTECTION_STATUS_KEY) or {}
        status[server_id] = enabled
        await self.ctx.store.set(PROTECTION_STATUS_KEY, status)
        return {"success": True, "enabled": enabled, "fromCache": False}

    # =========================================================================
    # Sync
    # =========================================================================

    async def _handle_refresh_server_rules(self, data: Dict) -> Dict[str, Any]:
        result = await self.ctx.sync.refresh(
            _require(data, "serverId"), force=bool(data.get("force", False))
        )
        return _with_rule_counts(result)

    async def _handle_refresh_all_servers(self, data: Dict) -> Dict[str, Any]:
        return await self.ctx.sync.refresh_all(force=bool(data.get("force", False)))

    async def _handle_get_server_rules(self, data: Dict) -> Dict[str, Any]:
        result = await self.ctx.sync.get_rules(_require(data, "serverId"))
        return _with_rule_counts(result)

    # =========================================================================
    # Cache
    # =========================================================================

    async def _handle_get_cache(self, data: Dict) -> Optional[Dict[str, Any]]:
        entry = await self.ctx.rule_cache.get(_require(data, "serverId"))
        return entry.to_dict() if entry else None

    async def _handle_clear_cache(self, data: Dict) -> bool:
        # No serverId clears every entry
        return await self.ctx.rule_cache.clear(data.get("serverId"))

    # =========================================================================
    # Diagnostics
    # =========================================================================

    async def _handle_set_debug_mode(self, data: Dict) -> Dict[str, Any]:
        enabled = bool(data.get("enabled"))
        level = set_debug_logging(enabled)
        await self.ctx.store.set(DEBUG_MODE_KEY, enabled)
        logger.info(f"Debug mode {'enabled' if enabled else 'disabled'}, log level set to {level}")
        return {"success": True, "logLevel": level}
