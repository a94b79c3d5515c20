"""Provides functions for loading and accessing configuration settings.

Supports loading from .env files, environment variables, and a dedicated
configuration file (~/.quotasync/config.yaml). Builds the `SyncConfig`
value object injected into the engine.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional, Dict

import yaml
from dotenv import load_dotenv

from quotasync.domain.models.common import BRONZE, MembershipTier, UserId
from quotasync.domain.models.config import SyncConfig
from quotasync.domain.models.errors import ConfigurationError

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
DEFAULT_CONFIG_DIR = Path.home() / ".quotasync"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_STATE_DIR = DEFAULT_CONFIG_DIR / "state"
ENV_FILE_NAME = ".env"
ENV_PREFIX = "QUOTASYNC_"

# Config keys for SyncConfig fields (YAML uses the nested 'sync.' prefix)
SYNC_KEYS = (
    "batch_size", "flush_interval_ms", "sync_interval_ms", "max_retries",
    "max_attempts", "base_delay_ms", "max_delay_ms", "jitter_ratio",
    "window_ms", "tier_limits_ttl_ms", "acked_id_memory",
    "circuit_failure_threshold", "circuit_reset_ms",
    "write_rate_limit", "write_rate_window_ms",
)

# --- Configuration Store ---
_config: Dict[str, Any] = {}
_test_config: Dict[str, Any] = {}  # For testing purposes
_loaded = False

def _flatten(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flattens nested YAML mappings into dotted keys ('sync.batch_size')."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat

def load_configuration(config_file: Path = DEFAULT_CONFIG_FILE, env_file: Optional[Path] = None, reload: bool = False) -> None:
    """Loads configuration from environment, .env file, and YAML file.

    Priority order (highest to lowest):
    1. Environment Variables (QUOTASYNC_SYNC_BATCH_SIZE, ...)
    2. .env file
    3. YAML configuration file
    4. Default values

    Args:
        config_file: Path to the YAML configuration file.
        env_file: Path to the .env file (searches upwards from cwd if None).
        reload: Discard previously loaded values and load again.
    """
    global _config, _loaded
    if _loaded and not reload:
        logger.debug("Configuration already loaded.")
        return

    _config = {}

    # 1. Load from YAML file (Lowest priority)
    if config_file.exists():
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f)
            if isinstance(yaml_config, dict):
                _config.update(_flatten(yaml_config))
                logger.info(f"Loaded configuration from YAML: {config_file}")
            elif yaml_config is not None:
                logger.warning(f"YAML config file {config_file} did not contain a mapping.")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load or parse YAML config {config_file}: {e}")
    else:
        logger.debug(f"YAML config file not found: {config_file}")

    # 2. Load from .env file (Medium priority)
    dotenv_path = env_file or find_dotenv_path()
    if dotenv_path:
        # override=False: real environment variables take precedence
        if load_dotenv(dotenv_path=dotenv_path, override=False):
            logger.info(f"Loaded environment variables from: {dotenv_path}")
    else:
        logger.debug("Skipping .env file loading (no file found).")

    # 3. Environment Variables (Highest priority) are handled in get_config

    _loaded = True
    logger.debug("Configuration loading process completed.")

def _coerce(value: str) -> Any:
    """Converts common string forms from the environment."""
    if value.lower() == 'true':
        return True
    if value.lower() == 'false':
        return False
    try:
        if '.' in value:
            return float(value)
        return int(value)
    except ValueError:
        return value

def env_key_for(key: str) -> str:
    """'sync.batch_size' -> 'QUOTASYNC_SYNC_BATCH_SIZE'."""
    return ENV_PREFIX + key.upper().replace('.', '_')

def get_config(key: str, default: Any = None) -> Any:
    """
    Get a configuration value by dotted key.

    Priority:
    1. Test configuration (if in testing mode)
    2. Environment variable
    3. YAML config
    4. Default value
    """
    if key in _test_config:
        return _test_config[key]

    env_key = env_key_for(key)
    if env_key in os.environ:
        return _coerce(os.environ[env_key])

    if key in _config:
        return _config[key]

    return default

def set_config(key: str, value: Any) -> None:
    """Sets a configuration value for the current process.

    Args:
        key: Configuration key (e.g., 'logging.level')
        value: Value to set
    """
    logger.debug(f"Setting config: {key} = {value}")
    _config[key] = value
    os.environ[env_key_for(key)] = str(value)

def find_dotenv_path() -> Optional[Path]:
    """Searches for the .env file upwards from the current directory."""
    cwd = Path.cwd()
    for path in [cwd] + list(cwd.parents):
        env_path = path / ENV_FILE_NAME
        if env_path.is_file():
            return env_path
    return None

# --- Convenience Functions ---

def load_sync_config() -> SyncConfig:
    """Builds the engine configuration from the layered settings.

    Raises:
        ConfigurationError: If a value is missing its expected type or range.
    """
    values = {name: get_config(f"sync.{name}") for name in SYNC_KEYS}
    return SyncConfig.from_mapping(values)

def get_user_id() -> UserId:
    user_id = get_config('user.id')
    if not user_id:
        raise ConfigurationError("No user configured. Set 'user.id' or QUOTASYNC_USER_ID.")
    return UserId(str(user_id))

def get_user_tier() -> MembershipTier:
    return MembershipTier(str(get_config('user.tier', BRONZE)))

def get_remote_base_url() -> Optional[str]:
    """Base URL of the HTTP remote store; None selects the in-memory sandbox."""
    url = get_config('remote.base_url')
    return str(url) if url else None

def get_remote_api_token() -> Optional[str]:
    token = get_config('remote.api_token')
    return str(token) if token else None

def get_remote_timeout() -> float:
    return float(get_config('remote.timeout_seconds', 10.0))

def get_state_backend() -> str:
    backend = str(get_config('state.backend', 'diskcache')).lower()
    if backend not in ('diskcache', 'json'):
        raise ConfigurationError(f"Unknown state backend '{backend}'. Use 'diskcache' or 'json'.")
    return backend

def get_state_directory() -> Path:
    return Path(get_config('state.directory', DEFAULT_STATE_DIR)).expanduser()

def set_config_for_testing(config_dict: Dict[str, Any]) -> None:
    """
    Set configuration values for testing purposes.
    These values override any existing configuration.
    """
    _test_config.update(config_dict)
    logger.debug(f"Set testing configuration: {config_dict}")

def clear_test_config() -> None:
    """Clear all testing configuration values."""
    _test_config.clear()
    logger.debug("Cleared testing configuration")
