"""
Monitoring components: host facts and resource usage.
"""
from .system_monitor import HostFactProvider, SystemMonitor

__all__ = [
    'HostFactProvider',
    'SystemMonitor'
]
