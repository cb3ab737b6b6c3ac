"""
Defines the connection states of the agent.
"""
from enum import Enum


class ConnectionState(Enum):
    """
    Connection lifecycle of the agent, owned by the orchestrator.

    States:
        DISCONNECTED: Not enrolled, or enrollment was lost
        CONNECTING: Enrollment in progress
        CONNECTED: Server accepted enrollment, credentials not yet stored
        AUTHENTICATED: Credentials stored, periodic jobs running
        ERROR: The last enrollment attempt failed
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    ERROR = "error"
