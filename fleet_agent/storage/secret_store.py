"""
Secret store backends.

Every backend stores text blobs addressed by ``(service, account)``. The
agent keeps two blobs per installation: the enrollment record and the
credential pair.
"""
import os
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, TYPE_CHECKING

import keyring
import keyring.errors

from ..errors import SecretStoreError
from ..utils import get_logger, save_json, load_json

if TYPE_CHECKING:
    from ..config import ConfigManager

logger = get_logger(__name__)

SECRET_FILENAME = "agent_secrets.json"


class SecretStore(ABC):
    """
    Get/set/delete a named secret blob, keyed by service and account.
    """

    @abstractmethod
    def get(self, service: str, account: str) -> Optional[str]:
        """
        Read a secret.

        :return: The stored value, or None when nothing is stored
        :rtype: Optional[str]
        :raises SecretStoreError: If the backend cannot be read
        """

    @abstractmethod
    def set(self, service: str, account: str, value: str) -> None:
        """
        Write a secret, replacing any previous value.

        :raises SecretStoreError: If the backend cannot be written
        """

    @abstractmethod
    def delete(self, service: str, account: str) -> None:
        """Remove a secret. Deleting a missing secret is not an error."""


class MemorySecretStore(SecretStore):
    """Process-local store. Nothing survives a restart."""

    def __init__(self):
        self._values: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def get(self, service: str, account: str) -> Optional[str]:
        with self._lock:
            return self._values.get(service, {}).get(account)

    def set(self, service: str, account: str, value: str) -> None:
        with self._lock:
            self._values.setdefault(service, {})[account] = value

    def delete(self, service: str, account: str) -> None:
        with self._lock:
            self._values.get(service, {}).pop(account, None)


class FileSecretStore(SecretStore):
    """
    JSON file store laid out as ``{service: {account: value}}``.

    The file is rewritten atomically with owner-only permissions. Used where
    no OS credential vault is available.
    """

    def __init__(self, file_path: str):
        """
        :param file_path: Location of the secrets file
        :type file_path: str
        """
        if not file_path:
            raise ValueError("A file path is required for FileSecretStore.")
        self.file_path = file_path
        self._lock = threading.Lock()
        logger.debug(f"FileSecretStore using {self.file_path}")

    def _load(self) -> Dict[str, Dict[str, str]]:
        data = load_json(self.file_path)
        if not isinstance(data, dict):
            logger.warning(f"Secrets file {self.file_path} is not a JSON object. Ignoring its content.")
            return {}
        return data

    def get(self, service: str, account: str) -> Optional[str]:
        with self._lock:
            value = self._load().get(service, {}).get(account)
        return value if isinstance(value, str) else None

    def set(self, service: str, account: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data.setdefault(service, {})[account] = value
            if not save_json(data, self.file_path, mode=0o600):
                raise SecretStoreError(f"Could not write secrets file {self.file_path}")

    def delete(self, service: str, account: str) -> None:
        with self._lock:
            data = self._load()
            if account not in data.get(service, {}):
                return
            del data[service][account]
            if not data[service]:
                del data[service]
            if not save_json(data, self.file_path, mode=0o600):
                raise SecretStoreError(f"Could not write secrets file {self.file_path}")


class KeyringSecretStore(SecretStore):
    """
    OS credential vault through the ``keyring`` library.

    When the keyring backend fails and a fallback store is configured, reads
    and writes go to the fallback instead. Values that only exist in the
    fallback are moved into the keyring the next time they are read.
    """

    def __init__(self, fallback: Optional[SecretStore] = None):
        """
        :param fallback: Store used when the keyring backend raises
        :type fallback: Optional[SecretStore]
        """
        self.fallback = fallback
        logger.debug(f"KeyringSecretStore using backend {type(keyring.get_keyring()).__name__}")

    def get(self, service: str, account: str) -> Optional[str]:
        try:
            value = keyring.get_password(service, account)
        except keyring.errors.KeyringError as e:
            if not self.fallback:
                raise SecretStoreError(f"Keyring read failed for {service}/{account}: {e}") from e
            logger.error(f"Failed to read {service}/{account} from keyring: {e}. Checking file fallback.")
            return self.fallback.get(service, account)

        if value is not None or not self.fallback:
            return value

        value = self.fallback.get(service, account)
        if value is not None:
            logger.info(f"Migrating {service}/{account} from file fallback to keyring...")
            try:
                keyring.set_password(service, account, value)
                self.fallback.delete(service, account)
            except keyring.errors.KeyringError as e:
                logger.warning(f"Could not migrate {service}/{account} to keyring: {e}")
        return value

    def set(self, service: str, account: str, value: str) -> None:
        try:
            keyring.set_password(service, account, value)
            logger.debug(f"Secret {service}/{account} saved to keyring.")
        except keyring.errors.KeyringError as e:
            if not self.fallback:
                raise SecretStoreError(f"Keyring write failed for {service}/{account}: {e}") from e
            logger.error(f"Failed to save {service}/{account} to keyring: {e}. Falling back to file.")
            self.fallback.set(service, account, value)
            return

        if self.fallback:
            self.fallback.delete(service, account)

    def delete(self, service: str, account: str) -> None:
        try:
            keyring.delete_password(service, account)
        except keyring.errors.PasswordDeleteError:
            logger.debug(f"Secret {service}/{account} was not in keyring.")
        except keyring.errors.KeyringError as e:
            if not self.fallback:
                raise SecretStoreError(f"Keyring delete failed for {service}/{account}: {e}") from e
            logger.error(f"Failed to delete {service}/{account} from keyring: {e}")

        if self.fallback:
            self.fallback.delete(service, account)


def _default_secret_file(config: 'ConfigManager') -> str:
    configured = config.get('storage.file_path')
    if configured:
        return configured
    app_name = config.get('agent.app_name', 'FleetAgent')
    return os.path.join(os.path.expanduser("~"), f".{app_name.lower()}", SECRET_FILENAME)


def create_secret_store(config: 'ConfigManager') -> SecretStore:
    """
    Builds the secret store selected by ``storage.backend``.

    :param config: Agent configuration
    :type config: ConfigManager
    :return: A ready to use store
    :rtype: SecretStore
    :raises ValueError: If the backend name is unknown
    """
    backend = str(config.get('storage.backend', 'keyring')).lower()
    if backend == 'memory':
        logger.warning("Using in-memory secret store. Enrollment will not survive a restart.")
        return MemorySecretStore()
    if backend == 'file':
        return FileSecretStore(_default_secret_file(config))
    if backend == 'keyring':
        return KeyringSecretStore(fallback=FileSecretStore(_default_secret_file(config)))
    raise ValueError(f"Unknown storage backend: {backend}")
