"""
Configuration loader for the DNS filter manager.

Process-level settings (where state lives, how hard to push appliances)
come from a YAML file with environment overrides. User-editable sync
preferences are a separate ``Settings`` model persisted in the key-value
store; see ``models.Settings``.

Config file location: /var/lib/dns-filter-manager/config.yaml
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("/var/lib/dns-filter-manager")
DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.yaml"


class ManagerConfig(BaseModel):
    """Configuration for the manager process."""

    # Paths
    state_dir: Path = Field(
        default=DEFAULT_STATE_DIR,
        description="State directory for the key-value store"
    )

    # Identity
    instance_id: Optional[str] = Field(
        default=None,
        description="Per-installation identifier (defaults to machine id)"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)"
    )

    # Outbound requests
    request_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Per-attempt request timeout in seconds"
    )

    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries after the first attempt"
    )

    retry_base_delay: float = Field(
        default=1.0,
        ge=0,
        description="Base backoff delay in seconds (doubles per attempt)"
    )

    rate_limit_capacity: int = Field(
        default=20,
        ge=1,
        description="Requests allowed per rate-limit window"
    )

    rate_limit_window: float = Field(
        default=1.0,
        gt=0,
        description="Rate-limit refill window in seconds"
    )

    verify_ssl: bool = Field(
        default=True,
        description="Verify appliance TLS certificates"
    )

    # Background sync
    sync_interval: int = Field(
        default=300,
        ge=10,
        le=86400,
        description="Seconds between background sync passes"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        if v.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR']:
            raise ValueError('log_level must be DEBUG, INFO, WARNING, or ERROR')
        return v.upper()

    @property
    def storage_path(self) -> Path:
        """JSON key-value store path."""
        return self.state_dir / "storage.json"


def load_config(config_path: Optional[Path] = None) -> ManagerConfig:
    """
    Load manager configuration from YAML file.

    Args:
        config_path: Path to config file. When omitted the default path is
            tried and built-in defaults are used if it does not exist.

    Returns:
        ManagerConfig instance

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        ValueError: If config is invalid
    """
    config_dict = {}

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    elif DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH

    if config_path is not None:
        logger.info(f"Loading config from {config_path}")
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            raise ValueError(f"Config file is empty: {config_path}")
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must contain a mapping: {config_path}")
        config_dict.update(loaded)

    # Environment variable overrides (for systemd service configuration)
    env_overrides = {
        'state_dir': os.environ.get('STATE_DIR'),
        'log_level': os.environ.get('LOG_LEVEL'),
        'instance_id': os.environ.get('INSTANCE_ID'),
        'verify_ssl': os.environ.get('VERIFY_SSL'),
    }

    for key, value in env_overrides.items():
        if value is not None:
            if key == 'verify_ssl':
                config_dict[key] = value.lower() not in ('false', '0', 'no')
            elif key == 'state_dir':
                config_dict[key] = Path(value)
            else:
                config_dict[key] = value
            logger.info(f"Environment override: {key}={config_dict[key]}")

    return ManagerConfig(**config_dict)
