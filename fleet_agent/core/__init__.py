"""
Core functionality of the Fleet Agent.
"""
from .connection_state import ConnectionState
from .notification_log import NotificationLog, Notification
from .periodic_job import PeriodicJob
from .task_executor import TaskExecutor
from .agent import Agent

__all__ = [
    'ConnectionState',
    'NotificationLog',
    'Notification',
    'PeriodicJob',
    'TaskExecutor',
    'Agent'
]
