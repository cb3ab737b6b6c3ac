"""
Fleet Agent - Source Package

This package contains the enrollment, credential, communication, task
execution, monitoring, configuration and utility modules of the agent.

Main components:
- Agent: The main agent class orchestrating all components
- ConnectionState: Enumeration of the agent's connection states
- CredentialManager: Owns the access/refresh token pair
- NetworkClient: HTTP client for the control-plane API
- ServerConnector: Control-plane operations
- TaskExecutor: Dispatches tasks to their handlers
- ConfigManager: Manages agent configuration
- SystemMonitor: Collects host facts
"""
from .version import __version__, __app_name__

from .core import Agent, ConnectionState, NotificationLog, TaskExecutor
from .auth import CredentialManager, CredentialPair
from .communication import NetworkClient, ServerConnector, Endpoint
from .config import ConfigManager
from .identity import IdentityManager
from .models import Task, TaskType, TaskStatus, TaskExecutionResult
from .monitoring import SystemMonitor

__all__ = [
    '__version__',
    '__app_name__',

    'Agent',
    'ConnectionState',
    'NotificationLog',
    'TaskExecutor',

    'CredentialManager',
    'CredentialPair',

    'NetworkClient',
    'ServerConnector',
    'Endpoint',

    'ConfigManager',
    'IdentityManager',

    'Task',
    'TaskType',
    'TaskStatus',
    'TaskExecutionResult',

    'SystemMonitor'
]
