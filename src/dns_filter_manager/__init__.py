"""DNS Filter Manager - credential vault, rule cache and sync for AdGuard Home appliances"""

__version__ = "0.1.0"

from .config import ManagerConfig, load_config
from .exceptions import (
    ManagerError,
    ValidationError,
    NotFoundError,
    ServerNotFound,
    CredentialError,
    EncryptionFailed,
    DecryptionFailed,
    RequestError,
    NetworkError,
    TimedOut,
    HTTPError,
    MalformedResponse,
)
from .models import ApplianceRecord, EncryptedSecret, RuleCacheEntry, Settings
from .kv_store import KeyValueStore, InMemoryKeyValueStore, JsonFileKeyValueStore
from .crypto import CredentialCodec, is_encrypted
from .credential_store import CredentialStore
from .rule_cache import RuleCache
from .request_gate import RequestGate, RateLimiter, InFlightRequests
from .appliance_client import ApplianceClient
from .sync_engine import SyncEngine, SyncResult
from .context import RuntimeContext, create_context
from .service import ManagerService

__all__ = [
    # Version
    "__version__",

    # Configuration
    "ManagerConfig",
    "load_config",

    # Errors
    "ManagerError",
    "ValidationError",
    "NotFoundError",
    "ServerNotFound",
    "CredentialError",
    "EncryptionFailed",
    "DecryptionFailed",
    "RequestError",
    "NetworkError",
    "TimedOut",
    "HTTPError",
    "MalformedResponse",

    # Models
    "ApplianceRecord",
    "EncryptedSecret",
    "RuleCacheEntry",
    "Settings",

    # Storage
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "CredentialCodec",
    "is_encrypted",
    "CredentialStore",
    "RuleCache",

    # Network
    "RequestGate",
    "RateLimiter",
    "InFlightRequests",
    "ApplianceClient",

    # Sync / service
    "SyncEngine",
    "SyncResult",
    "RuntimeContext",
    "create_context",
    "ManagerService",
]
