"""
Pytest configuration and shared fixtures.
"""
from typing import Any, Dict

import pytest

from fleet_agent.auth import CredentialManager
from fleet_agent.communication import NetworkClient
from fleet_agent.config import ConfigManager
from fleet_agent.core import NotificationLog
from fleet_agent.storage import MemorySecretStore

from tests.helpers import SERVER_URL, FakeHostFacts, FakeSession


@pytest.fixture
def config_data() -> Dict[str, Any]:
    return {
        "server_url": SERVER_URL,
        "storage": {"backend": "memory"},
        "network": {
            "service_api_key": "service-key",
            "backoff_base_sec": 0,
            "request_timeout_sec": 5,
        },
        "log": {"console_level": "WARNING"},
    }


@pytest.fixture
def config(config_data) -> ConfigManager:
    return ConfigManager.from_dict(config_data)


@pytest.fixture
def secret_store() -> MemorySecretStore:
    return MemorySecretStore()


@pytest.fixture
def notifications() -> NotificationLog:
    return NotificationLog()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def host_facts() -> FakeHostFacts:
    return FakeHostFacts()


@pytest.fixture
def network_client(config, notifications, session) -> NetworkClient:
    return NetworkClient(config, notifications=notifications, session=session)


@pytest.fixture
def credential_manager(config, secret_store, network_client, notifications):
    manager = CredentialManager(config, secret_store, network_client, notifications)
    network_client.attach_credential_manager(manager)
    yield manager
    manager.shutdown()
