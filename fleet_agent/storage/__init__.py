"""
Secret storage backends used for the enrollment record and credential pair.
"""
from .secret_store import (
    SecretStore,
    KeyringSecretStore,
    FileSecretStore,
    MemorySecretStore,
    create_secret_store,
)

__all__ = [
    'SecretStore',
    'KeyringSecretStore',
    'FileSecretStore',
    'MemorySecretStore',
    'create_secret_store'
]
