"""
Software installation task handler.
"""
import re
from typing import Dict, Any, List

from ..errors import TaskExecutionError, UnsupportedPackageManagerError
from ..models import Task, TaskType
from ..utils import get_logger
from .base_handler import BaseTaskHandler

logger = get_logger(__name__)

PACKAGE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9@._+/:=-]+$")

INSTALL_COMMANDS: Dict[str, List[str]] = {
    "brew": ["brew", "install"],
    "mas": ["mas", "install"],
    "pip3": ["pip3", "install"],
    "npm": ["npm", "install", "-g"],
}


class SoftwareTaskHandler(BaseTaskHandler):
    """
    Installs a package with one of the supported package managers.

    Payload: ``package``, ``package_manager`` (default ``brew``).
    """

    task_type = TaskType.INSTALL_SOFTWARE

    def execute(self, task: Task) -> Dict[str, Any]:
        package = self.require(task, "package").strip()
        manager = (task.payload.get("package_manager") or "brew").strip().lower()

        base_command = INSTALL_COMMANDS.get(manager)
        if base_command is None:
            raise UnsupportedPackageManagerError(
                f"Unsupported package manager '{manager}'. Supported: {', '.join(INSTALL_COMMANDS)}"
            )
        if not PACKAGE_NAME_PATTERN.match(package) or package.startswith("-"):
            raise TaskExecutionError(f"Invalid package name '{package}'")

        args = base_command + [package]
        logger.info(f"Installing '{package}' with {manager} for task {task.task_id}")
        payload = self.run_process(args, self.timeout_for(task))
        payload.update({"command": " ".join(args), "package": package, "package_manager": manager})
        return payload
