"""
Configuration Manager module for the fleet agent.
"""
import copy
import json
import os
import datetime
import shutil
from typing import Any, Optional, Dict
from urllib.parse import urlparse

from ..utils import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "agent": {
        "config_version": 2,
        "app_name": "FleetAgent",
        "enrollment_token": None,
        "task_poll_interval_sec": 30,
        "telemetry_interval_sec": 900,
        "device_data_interval_sec": 300,
        "heartbeat_interval_sec": 3600,
        "task_poll_mode": "poll",
    },
    "network": {
        "service_api_key": "",
        "request_timeout_sec": 15,
        "max_retries": 3,
        "backoff_base_sec": 1.0,
        "max_refresh_attempts": 3,
        "special_error_cooldown_sec": 30,
    },
    "credentials": {
        "refresh_buffer_sec": 300,
        "rotation_age_days": 29,
        "rotation_retry_sec": 3600,
        "default_access_ttl_sec": 3600,
        "default_refresh_ttl_days": 30,
    },
    "storage": {
        "backend": "keyring",
        "service_name": "FleetAgent",
        "namespace": "default",
        "file_path": None,
    },
    "identity": {
        "method_timeout_sec": 5,
    },
    "task_executor": {
        "default_timeout_sec": 300,
        "max_output_bytes": 1048576,
        "blocked_patterns": [],
    },
    "notifications": {
        "capacity": 50,
    },
    "log": {
        "console_level": "INFO",
        "file_level": "DEBUG",
        "file_path": None,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``base`` updated recursively with ``override``; inputs are not modified."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConfigManager:
    """
    Loads and manages agent configuration from a JSON file.

    File values are layered over :data:`DEFAULT_CONFIG`, so a minimal file
    only needs ``server_url``.
    """
    CURRENT_CONFIG_VERSION = 2

    def __init__(self, config_path: Optional[str], data: Optional[Dict[str, Any]] = None):
        """
        Initializes the ConfigManager by loading the configuration file.

        :param config_path: The path to the agent configuration JSON file
        :type config_path: Optional[str]
        :param data: Configuration dictionary used instead of a file when config_path is None
        :type data: Optional[Dict[str, Any]]
        :raises: FileNotFoundError if the configuration file path is provided but does not exist
        :raises: ValueError if the configuration file is invalid JSON or essential keys are missing
        """
        self._config_path = config_path
        self._config_data: Dict[str, Any] = {}
        self._migration_performed = False

        if self._config_path is None:
            logger.debug("ConfigManager initialized from an in-memory dictionary.")
            self._config_data = copy.deepcopy(data or {})
        else:
            self._load_config()
            self._check_and_migrate_config()
            logger.info(f"Configuration loaded successfully from: {self._config_path}")
            if self._migration_performed:
                logger.info("Configuration migration was performed.")

        self._config_data = _deep_merge(DEFAULT_CONFIG, self._config_data)
        self._validate_config()
        logger.info(f"Using configuration version: {self.get('agent.config_version', 'N/A')}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConfigManager':
        """
        Builds a configuration from a dictionary without touching the filesystem.

        :param data: Configuration values layered over the defaults
        :type data: Dict[str, Any]
        :rtype: ConfigManager
        """
        return cls(None, data=data)

    def _load_config(self):
        """Reads the JSON file into memory. Defaults are merged in later by __init__."""
        if not os.path.exists(self._config_path):
            logger.critical(f"Configuration file not found: {self._config_path}")
            raise FileNotFoundError(f"Configuration file not found: {self._config_path}")

        try:
            with open(self._config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.critical(f"Error decoding JSON from config file {self._config_path}: {e}")
            raise ValueError(f"Invalid JSON in configuration file: {e}") from e
        except (IOError, OSError) as e:
            logger.critical(f"Error reading config file {self._config_path}: {e}")
            raise ValueError(f"Could not read configuration file: {e}") from e

        if not isinstance(data, dict):
            raise ValueError("Configuration file content is not a valid JSON object.")
        self._config_data = data

    def _validate_config(self):
        """
        Performs basic validation of essential configuration keys.

        :raises: ValueError if required keys are missing or invalid
        """
        server_url = self.get('server_url')
        if not server_url:
            msg = "Missing essential configuration keys: server_url"
            logger.critical(msg)
            raise ValueError(msg)

        if not isinstance(server_url, str):
            msg = "Invalid 'server_url' configuration: Must be a non-empty string."
            logger.critical(msg)
            raise ValueError(msg)

        parsed = urlparse(server_url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            msg = f"Invalid server_url configured: {server_url}. Must include scheme (e.g., https://) and host."
            logger.critical(msg)
            raise ValueError(msg)

        for key in ('agent.task_poll_interval_sec', 'agent.telemetry_interval_sec',
                    'agent.device_data_interval_sec', 'agent.heartbeat_interval_sec'):
            value = self.get(key)
            if not isinstance(value, (int, float)) or value <= 0:
                msg = f"Invalid '{key}' configuration: Must be a positive number."
                logger.critical(msg)
                raise ValueError(msg)

        logger.debug("Basic configuration validation passed.")

    def _backup_config(self) -> Optional[str]:
        """Copies the file to ``<path>.backup_<timestamp>`` before a migration rewrites it."""
        if not self._config_path or not os.path.exists(self._config_path):
            logger.error("Cannot backup config: Config path is invalid or file does not exist.")
            return None

        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = f"{self._config_path}.backup_{timestamp}"

        try:
            shutil.copy2(self._config_path, backup_path)
            logger.info(f"Configuration backed up successfully to: {backup_path}")
            return backup_path
        except OSError as e:
            logger.error(f"Failed to create configuration backup at {backup_path}: {e}", exc_info=True)
            return None

    def _save_config(self, config_data: Dict[str, Any]) -> bool:
        """
        Writes ``config_data`` through a temp file and an atomic replace.

        :rtype: bool
        """
        if not self._config_path:
            logger.error("Cannot save config: Config path is not set.")
            return False

        temp_path = self._config_path + ".tmp"
        try:
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(config_data, f, indent=4)
            os.replace(temp_path, self._config_path)
            logger.info(f"Configuration saved successfully to: {self._config_path}")
            return True
        except (IOError, OSError, TypeError) as e:
            logger.error(f"Failed to save configuration to {self._config_path}: {e}", exc_info=True)
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass
            return False

    @staticmethod
    def _migrate_v1_to_v2(data: Dict[str, Any]) -> Dict[str, Any]:
        """
        v1 kept the service key and poll interval at the top level.

        :param data: v1 configuration (copied, not modified)
        :return: v2 configuration
        """
        migrated = copy.deepcopy(data)
        agent_section = migrated.setdefault('agent', {})
        network_section = migrated.setdefault('network', {})

        if 'api_key' in migrated:
            network_section.setdefault('service_api_key', migrated.pop('api_key'))
        if 'poll_interval' in migrated:
            agent_section.setdefault('task_poll_interval_sec', migrated.pop('poll_interval'))

        agent_section['config_version'] = 2
        return migrated

    def _check_and_migrate_config(self):
        """
        Checks the config version and applies migrations if necessary.

        :raises: ValueError if migration fails
        """
        agent_section = self._config_data.get('agent')
        loaded_version = agent_section.get('config_version', 1) if isinstance(agent_section, dict) else 1

        if not isinstance(loaded_version, int) or loaded_version < 1:
            logger.warning(f"Invalid 'agent.config_version' ({loaded_version}) found. Attempting migration from version 1.")
            loaded_version = 1

        if loaded_version > self.CURRENT_CONFIG_VERSION:
            logger.warning(f"Configuration file version (v{loaded_version}) is newer than agent's supported version (v{self.CURRENT_CONFIG_VERSION}). Agent may not function correctly.")
            return
        if loaded_version == self.CURRENT_CONFIG_VERSION:
            logger.debug(f"Configuration version (v{loaded_version}) matches. No migration needed.")
            return

        logger.info(f"Configuration version mismatch: Found v{loaded_version}, expected v{self.CURRENT_CONFIG_VERSION}. Starting migration...")
        backup_path = self._backup_config()
        if not backup_path:
            logger.critical("Configuration backup failed. Aborting migration process to prevent data loss.")
            raise ValueError("Configuration backup failed. Cannot proceed with migration.")

        current_data = self._migrate_v1_to_v2(self._config_data)
        if not self._save_config(current_data):
            logger.critical(f"Failed to save migrated configuration. Original config backed up at: {backup_path}.")
            raise ValueError("Failed to save migrated configuration.")

        self._config_data = current_data
        self._migration_performed = True
        logger.info("Configuration successfully migrated and saved.")

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Looks up a dotted path such as ``network.max_retries``.

        Missing keys and explicit nulls both yield ``default``.

        :param key_path: Dot-separated key path
        :param default: Returned when the key is absent or null
        :rtype: Any
        """
        value: Any = self._config_data
        for key in key_path.split('.'):
            if not isinstance(value, dict) or key not in value:
                return default
            value = value[key]
        return default if value is None else value
