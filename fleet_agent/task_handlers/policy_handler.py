"""
Policy task handler: firewall, screen saver, power management and security status.
"""
from typing import Dict, Any

from ..errors import TaskExecutionError, UnsupportedPolicyError
from ..models import Task, TaskType
from ..utils import get_logger, utc_now, format_iso8601
from .base_handler import BaseTaskHandler

logger = get_logger(__name__)

FIREWALL_TOOL = "/usr/libexec/ApplicationFirewall/socketfilterfw"


class PolicyTaskHandler(BaseTaskHandler):
    """
    Applies a configuration policy to the host.

    Payload: ``policy_type`` plus per-policy settings.
    """

    task_type = TaskType.APPLY_POLICY

    def execute(self, task: Task) -> Dict[str, Any]:
        policy_type = self.require(task, "policy_type").strip().lower()
        appliers = {
            "firewall": self._apply_firewall,
            "screen_saver": self._apply_screen_saver,
            "power_management": self._apply_power_management,
            "security": self._report_security,
        }
        applier = appliers.get(policy_type)
        if applier is None:
            raise UnsupportedPolicyError(f"Unsupported policy type '{policy_type}'")

        logger.info(f"Applying policy '{policy_type}' for task {task.task_id}")
        payload = applier(task)
        payload["policy_type"] = policy_type
        return payload

    def _apply_firewall(self, task: Task) -> Dict[str, Any]:
        action = (task.payload.get("action") or "enable").strip().lower()
        if action not in ("enable", "disable"):
            raise TaskExecutionError(f"Invalid firewall action '{action}'")
        state = "on" if action == "enable" else "off"
        payload = self.run_process([FIREWALL_TOOL, "--setglobalstate", state], self.timeout_for(task))
        payload["action"] = action
        return payload

    def _apply_screen_saver(self, task: Task) -> Dict[str, Any]:
        timeout = self._int_setting(task, "timeout", 300)
        payload = self.run_process(
            ["defaults", "-currentHost", "write", "com.apple.screensaver", "idleTime", "-int", str(timeout)],
            self.timeout_for(task)
        )
        payload["timeout"] = timeout
        return payload

    def _apply_power_management(self, task: Task) -> Dict[str, Any]:
        sleep_time = self._int_setting(task, "sleep_time", 0)
        payload = self.run_process(["pmset", "-a", "sleep", str(sleep_time)], self.timeout_for(task))
        payload["sleep_time"] = sleep_time
        return payload

    def _report_security(self, task: Task) -> Dict[str, Any]:
        if self.host_facts is None:
            raise TaskExecutionError("Security status requires a host fact provider")
        return {
            "policy": task.payload.get("policy") or "status",
            "status": self.host_facts.get_security_info(),
            "checked_at": format_iso8601(utc_now()),
        }

    @staticmethod
    def _int_setting(task: Task, name: str, default: int) -> int:
        raw = task.payload.get(name)
        if raw is None or raw == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            raise TaskExecutionError(f"Policy setting '{name}' must be an integer, got '{raw}'")
        if value < 0:
            raise TaskExecutionError(f"Policy setting '{name}' must not be negative")
        return value
