"""
Communication package for control-plane HTTP traffic.
"""
from .endpoints import Endpoint, AuthMode
from .http_client import NetworkClient
from .server_connector import ServerConnector

__all__ = [
    'Endpoint',
    'AuthMode',
    'NetworkClient',
    'ServerConnector',
]
