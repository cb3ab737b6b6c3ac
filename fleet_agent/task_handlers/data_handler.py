"""
Data collection and system health task handlers.
"""
from typing import Dict, Any, Optional, TYPE_CHECKING

from ..errors import TaskExecutionError
from ..models import Task, TaskType
from ..utils import get_logger, utc_now, format_iso8601
from .base_handler import BaseTaskHandler

if TYPE_CHECKING:
    from ..config import ConfigManager
    from ..monitoring import HostFactProvider

logger = get_logger(__name__)

CPU_HEALTHY_BELOW = 80
MEMORY_HEALTHY_BELOW = 90
DISK_HEALTHY_BELOW = 95


class _HostFactHandler(BaseTaskHandler):
    def __init__(self, config: 'ConfigManager', host_facts: Optional['HostFactProvider'] = None):
        super().__init__(config, host_facts)
        if host_facts is None:
            raise ValueError(f"{self.__class__.__name__} requires a host fact provider.")


class DataCollectionTaskHandler(_HostFactHandler):
    """
    Returns a section of host facts.

    Payload: ``data_type`` (hardware, software, network, system, processes,
    applications) and, for processes, an optional ``limit``.
    """

    task_type = TaskType.COLLECT_DATA

    def execute(self, task: Task) -> Dict[str, Any]:
        data_type = self.require(task, "data_type").strip().lower()
        facts = self.host_facts
        collectors = {
            "hardware": facts.get_hardware_info,
            "software": facts.get_software_info,
            "network": facts.get_network_info,
            "system": facts.get_system_info,
            "processes": lambda: facts.get_processes(self._limit(task)),
            "applications": facts.get_applications,
        }
        collector = collectors.get(data_type)
        if collector is None:
            raise TaskExecutionError(f"Unsupported data type '{data_type}'. Supported: {', '.join(collectors)}")

        logger.info(f"Collecting {data_type} data for task {task.task_id}")
        return {
            "data_type": data_type,
            "data": collector(),
            "collected_at": format_iso8601(utc_now()),
        }

    @staticmethod
    def _limit(task: Task) -> int:
        try:
            return int(task.payload.get("limit") or 20)
        except ValueError:
            raise TaskExecutionError(f"Invalid process limit '{task.payload.get('limit')}'")


class SystemCheckTaskHandler(_HostFactHandler):
    """Reports resource usage, uptime and an overall health verdict."""

    task_type = TaskType.SYSTEM_CHECK

    def execute(self, task: Task) -> Dict[str, Any]:
        usage = self.host_facts.get_usage_stats()
        system = self.host_facts.get_system_info()
        cpu = usage.get("cpu_usage", 0.0)
        memory = usage.get("memory_usage", 0.0)
        disk = usage.get("disk_usage", 0.0)
        healthy = cpu < CPU_HEALTHY_BELOW and memory < MEMORY_HEALTHY_BELOW and disk < DISK_HEALTHY_BELOW
        if not healthy:
            logger.warning(f"System check unhealthy: cpu={cpu}% memory={memory}% disk={disk}%")
        return {
            "cpu_usage": cpu,
            "memory_usage": memory,
            "disk_usage": disk,
            "uptime_seconds": system.get("uptime_seconds", 0),
            "system_healthy": healthy,
            "check_timestamp": format_iso8601(utc_now()),
        }
