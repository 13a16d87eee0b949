"""
AdGuard Home control API client.

Base path: /control
Auth: HTTP Basic, built from the appliance record on every call so a
credential change takes effect immediately.

Every call goes through the RequestGate (rate limit, timeout, retry).
Idempotent reads are de-duplicated while in flight; calls that change
appliance state are not, so two deliberate writes are never collapsed.
Responses are validated by ``schemas`` before they reach callers.
"""

import asyncio
import json
import logging
import ssl
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from . import __version__
from .exceptions import (
    DecryptionFailed,
    HTTPError,
    MalformedResponse,
    ManagerError,
    NetworkError,
    TimedOut,
)
from .models import ApplianceRecord
from .request_gate import RequestGate
from .rules import merge_rules, remove_rules as drop_rules
from .schemas import (
    CheckHostResult,
    FilteringStatus,
    QueryLog,
    ServerInfo,
    Stats,
    validate_check_host,
    validate_filtering_status,
    validate_protection_status,
    validate_query_log,
    validate_refresh_result,
    validate_server_info,
    validate_stats,
)

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = ("Authorization", "Cookie", "X-Auth-Token", "Api-Key")


def create_secure_ssl_context() -> ssl.SSLContext:
    """
    Create a hardened SSL context for appliance connections.

    Security settings:
    - TLS 1.2 minimum (TLS 1.0/1.1 disabled)
    - Certificate verification enabled
    - Hostname checking enabled
    """
    ctx = ssl.create_default_context()
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


def normalize_host(host: str) -> str:
    """Strip a trailing slash so endpoint paths never double up."""
    return host[:-1] if host.endswith("/") else host


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def sanitize_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Copy of headers safe for logging."""
    if not headers:
        return {}
    sanitized = dict(headers)
    for key in SENSITIVE_HEADERS:
        if key in sanitized:
            sanitized[key] = "[REDACTED]"
    return sanitized


class ApplianceClient:
    """
    HTTP client for appliance control APIs.

    Features:
    - Per-call Basic auth from the appliance record
    - Request tracing headers (X-Request-ID, X-Request-Timestamp)
    - Typed errors at the point of failure (NetworkError, HTTPError, ...)
    - Schema-validated responses
    """

    def __init__(
        self,
        gate: RequestGate,
        verify_ssl: bool = True,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.gate = gate
        self.verify_ssl = verify_ssl
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            ssl_option = create_secure_ssl_context() if self.verify_ssl else False
            connector = aiohttp.TCPConnector(ssl=ssl_option)

            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={'User-Agent': f'dns-filter-manager/{__version__}'},
            )
            self._owns_session = True
            logger.debug("Created new aiohttp session")
        return self._session

    async def close(self):
        """Close the client session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            logger.debug("Closed aiohttp session")

    async def __aenter__(self) -> "ApplianceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request_once(
        self,
        server: ApplianceRecord,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Make a single HTTP request.

        Returns:
            Parsed JSON body, or {"success": True} for empty/non-JSON bodies

        Raises:
            NetworkError: Connection-level failure
            TimedOut: Transport-level timeout
            HTTPError: Non-2xx response
            MalformedResponse: Body claims JSON but does not parse
        """
        url = f"{normalize_host(server.host)}{path}"
        headers = {
            'X-Request-ID': generate_request_id(),
            'X-Request-Timestamp': datetime.now(timezone.utc).isoformat(),
        }
        auth = aiohttp.BasicAuth(server.username, server.password or "")
        session = await self._get_session()

        logger.debug(
            f"[API Request] {method} {url} "
            f"headers={sanitize_headers(headers)} has_body={json_data is not None}"
        )

        try:
            async with session.request(
                method, url, json=json_data, params=params, headers=headers, auth=auth
            ) as response:
                logger.debug(
                    f"[API Response] {method} {url} request_id={headers['X-Request-ID']} "
                    f"status={response.status}"
                )

                if not 200 <= response.status < 300:
                    try:
                        body = (await response.text()).strip()
                    except (aiohttp.ClientError, UnicodeDecodeError):
                        body = ""
                    raise HTTPError(response.status, body[:200])

                text = await response.text()
                content_type = response.headers.get('Content-Type', '')

                if not text.strip() or 'application/json' not in content_type:
                    return {"success": True}

                try:
                    return json.loads(text)
                except ValueError as e:
                    raise MalformedResponse(f"Invalid JSON from {path}: {e}") from e

        # ServerTimeoutError is both a ClientError and a TimeoutError
        except asyncio.TimeoutError as e:
            raise TimedOut() from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error. Check server URL and connectivity. ({e})") from e

    async def _call(
        self,
        server: ApplianceRecord,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        dedupe: bool = False,
        retries: Optional[int] = None,
    ) -> Any:
        if server.password is None:
            raise DecryptionFailed(
                f"Stored password for server {server.name or server.id} could not be decrypted"
            )

        key = None
        if dedupe:
            key = self.gate.make_key(
                method, f"{normalize_host(server.host)}{path}", server.username, json_data, params
            )

        return await self.gate.call(
            lambda: self._request_once(server, method, path, json_data=json_data, params=params),
            key=key,
            retries=retries,
        )

    # =========================================================================
    # Connection test
    # =========================================================================

    async def test_connection(self, host: str, username: str, password: str) -> Dict[str, Any]:
        """
        Check an appliance with the given credentials.

        Single attempt, no retries, nothing stored.

        Returns:
            {"success": True} or {"success": False, "error": "..."}
        """
        candidate = ApplianceRecord(id="connection-test", host=host, username=username, password=password)
        try:
            await self._call(candidate, 'GET', '/control/filtering/status', retries=0)
            return {"success": True}
        except ManagerError as e:
            logger.error(f"Connection test failed: {e}")
            return {"success": False, "error": e.user_message}

    # =========================================================================
    # Filtering
    # =========================================================================

    async def get_filtering_status(self, server: ApplianceRecord) -> FilteringStatus:
        """GET /control/filtering/status"""
        logger.debug(f"Fetching filtering status for: {server.summary()}")
        data = await self._call(server, 'GET', '/control/filtering/status', dedupe=True)
        return validate_filtering_status(data)

    async def get_user_rules(self, server: ApplianceRecord) -> List[str]:
        status = await self.get_filtering_status(server)
        return status.user_rules

    async def set_rules(self, server: ApplianceRecord, rules: List[str]) -> None:
        """
        POST /control/filtering/set_rules

        Replaces the entire user rule list.
        """
        rules = [rule for rule in rules if isinstance(rule, str)]
        logger.info(f"Setting rules for: {server.summary()} ({len(rules)} rules)")
        await self._call(server, 'POST', '/control/filtering/set_rules', json_data={"rules": rules})

    async def add_rules(self, server: ApplianceRecord, new_rules: List[str]) -> List[str]:
        """Read-merge-write: append rules to the current list."""
        merged = merge_rules(await self.get_user_rules(server), new_rules)
        await self.set_rules(server, merged)
        return merged

    async def remove_rules(self, server: ApplianceRecord, rules_to_remove: List[str]) -> List[str]:
        """Read-filter-write: drop every occurrence of the given rules."""
        remaining = drop_rules(await self.get_user_rules(server), rules_to_remove)
        await self.set_rules(server, remaining)
        return remaining

    async def add_filter_url(
        self,
        server: ApplianceRecord,
        url: str,
        name: str,
        whitelist: bool = False,
    ) -> None:
        """POST /control/filtering/add_url"""
        logger.info(f"Adding filter URL for {server.summary()}: {name} ({url}) whitelist={whitelist}")
        await self._call(
            server, 'POST', '/control/filtering/add_url',
            json_data={"url": url, "name": name, "whitelist": whitelist},
        )

    async def remove_filter_url(self, server: ApplianceRecord, url: str, whitelist: bool = False) -> None:
        """POST /control/filtering/remove_url"""
        logger.info(f"Removing filter URL for {server.summary()}: {url} whitelist={whitelist}")
        await self._call(
            server, 'POST', '/control/filtering/remove_url',
            json_data={"url": url, "whitelist": whitelist},
        )

    async def set_filtering_config(
        self,
        server: ApplianceRecord,
        enabled: bool,
        interval: Optional[int] = None,
    ) -> None:
        """POST /control/filtering/config"""
        config: Dict[str, Any] = {"enabled": bool(enabled)}
        if interval is not None:
            config["interval"] = interval
        logger.info(f"Setting filtering config for {server.summary()}: {config}")
        await self._call(server, 'POST', '/control/filtering/config', json_data=config)

    async def refresh_filters(self, server: ApplianceRecord, whitelist: bool = False) -> Dict[str, Optional[int]]:
        """POST /control/filtering/refresh"""
        data = await self._call(
            server, 'POST', '/control/filtering/refresh', json_data={"whitelist": whitelist}
        )
        return validate_refresh_result(data)

    async def check_host(self, server: ApplianceRecord, name: str) -> CheckHostResult:
        """GET /control/filtering/check_host?name=..."""
        data = await self._call(
            server, 'GET', '/control/filtering/check_host', params={"name": name}, dedupe=True
        )
        result = validate_check_host(data, name)
        logger.debug(f"Host check result: {name} reason={result.reason} blocked={result.blocked}")
        return result

    # =========================================================================
    # Server status / protection
    # =========================================================================

    async def get_server_info(self, server: ApplianceRecord) -> ServerInfo:
        """GET /control/status"""
        logger.debug(f"Fetching server info for: {server.summary()}")
        data = await self._call(server, 'GET', '/control/status', dedupe=True)
        return validate_server_info(data)

    async def get_protection_status(self, server: ApplianceRecord) -> bool:
        data = await self._call(server, 'GET', '/control/status', dedupe=True)
        return validate_protection_status(data)

    async def set_protection_enabled(self, server: ApplianceRecord, enabled: bool) -> None:
        """POST /control/protection"""
        await self._call(server, 'POST', '/control/protection', json_data={"enabled": bool(enabled)})

    # =========================================================================
    # Query log / stats
    # =========================================================================

    async def get_query_log(
        self,
        server: ApplianceRecord,
        limit: int = 100,
        offset: int = 0,
        search: Optional[str] = None,
        response_status: Optional[str] = None,
    ) -> QueryLog:
        """GET /control/querylog"""
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if search:
            params["search"] = search
        if response_status:
            params["response_status"] = response_status

        data = await self._call(server, 'GET', '/control/querylog', params=params, dedupe=True)
        return validate_query_log(data)

    async def get_stats(self, server: ApplianceRecord) -> Stats:
        """GET /control/stats"""
        data = await self._call(server, 'GET', '/control/stats', dedupe=True)
        return validate_stats(data)
