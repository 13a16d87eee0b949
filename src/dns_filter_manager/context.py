"""
Runtime context: the single owner of process-wide state.

The derived-key cache (inside CredentialCodec), the in-flight request
map and the token bucket all live on one RuntimeContext. Tests build a
fresh context per case instead of resetting module globals.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .appliance_client import ApplianceClient
from .config import ManagerConfig
from .credential_store import CredentialStore
from .crypto import CredentialCodec
from .kv_store import JsonFileKeyValueStore, KeyValueStore
from .request_gate import InFlightRequests, RateLimiter, RequestGate
from .rule_cache import RuleCache
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class RuntimeContext:
    config: ManagerConfig
    store: KeyValueStore
    codec: CredentialCodec
    rate_limiter: RateLimiter
    in_flight: InFlightRequests
    gate: RequestGate
    rule_cache: RuleCache
    credentials: CredentialStore
    client: ApplianceClient
    sync: SyncEngine

    async def close(self) -> None:
        await self.client.close()


def create_context(
    config: ManagerConfig,
    store: Optional[KeyValueStore] = None,
    client: Optional[ApplianceClient] = None,
) -> RuntimeContext:
    """
    Wire up a RuntimeContext from configuration.

    Args:
        config: Process configuration
        store: Key-value store; defaults to the JSON file under state_dir
        client: Appliance client; defaults to one bound to the new gate
    """
    if store is None:
        store = JsonFileKeyValueStore(config.storage_path)

    codec = CredentialCodec(store, instance_id=config.instance_id)
    rate_limiter = RateLimiter(
        capacity=config.rate_limit_capacity,
        window=config.rate_limit_window,
    )
    in_flight = InFlightRequests()
    gate = RequestGate(
        rate_limiter,
        in_flight,
        timeout=config.request_timeout,
        max_retries=config.max_retries,
        retry_base_delay=config.retry_base_delay,
    )
    rule_cache = RuleCache(store)
    credentials = CredentialStore(store, codec, rule_cache)
    if client is None:
        client = ApplianceClient(gate, verify_ssl=config.verify_ssl)
    sync = SyncEngine(store, credentials, rule_cache, client)

    logger.debug(f"Runtime context created (state_dir={config.state_dir})")

    return RuntimeContext(
        config=config,
        store=store,
        codec=codec,
        rate_limiter=rate_limiter,
        in_flight=in_flight,
        gate=gate,
        rule_cache=rule_cache,
        credentials=credentials,
        client=client,
        sync=sync,
    )
