"""
Shell command and script task handlers.
"""
import os
import platform
import shlex
import tempfile
from typing import Dict, Any, List, Optional, TYPE_CHECKING

from ..errors import SecurityViolationError
from ..models import Task, TaskType
from ..utils import get_logger
from .base_handler import BaseTaskHandler

if TYPE_CHECKING:
    from ..config import ConfigManager
    from ..monitoring import HostFactProvider

logger = get_logger(__name__)

DEFAULT_BLOCKED_PATTERNS = (
    "rm -rf /",
    "sudo rm",
    "diskutil erase",
    "dd if=",
    "mkfs",
    "fdisk",
    "shutdown",
    "reboot",
    "halt",
    "init 0",
    "init 6",
    "killall -9",
    "kill -9 1",
    "format c:",
)


class CommandTaskHandler(BaseTaskHandler):
    """
    Runs a shell command line after checking it against the deny-list.

    Payload: ``command``.
    """

    task_type = TaskType.RUN_COMMAND

    def __init__(self, config: 'ConfigManager', host_facts: Optional['HostFactProvider'] = None):
        super().__init__(config, host_facts)
        extra = self.config.get('task_executor.blocked_patterns', []) or []
        self.blocked_patterns: List[str] = [p.lower() for p in DEFAULT_BLOCKED_PATTERNS]
        self.blocked_patterns.extend(str(p).lower() for p in extra if str(p).strip())
        self.is_windows = platform.system() == 'Windows'
        logger.info(f"{self.__class__.__name__} initialized with timeout={self.default_timeout}s, "
                    f"{len(self.blocked_patterns)} blocked patterns")

    def check_command(self, command: str) -> None:
        """
        Rejects commands containing a blocked pattern (case-insensitive).

        :raises SecurityViolationError: On a deny-list hit
        """
        lowered = command.lower()
        for pattern in self.blocked_patterns:
            if pattern in lowered:
                logger.warning(f"Blocked command matching pattern '{pattern}'")
                raise SecurityViolationError(f"Command blocked for security reasons (matched '{pattern}')")

    def shell_args(self, command: str) -> List[str]:
        if self.is_windows:
            return ["cmd", "/c", command]
        return ["/bin/bash", "-c", command]

    def run_shell(self, command: str, timeout: int) -> Dict[str, Any]:
        """
        Executes ``command`` through the platform shell.

        :return: ``output``, ``exit_code``, ``command`` and optional ``error``
        :rtype: Dict[str, Any]
        """
        payload = self.run_process(self.shell_args(command), timeout)
        payload["command"] = command
        return payload

    def execute(self, task: Task) -> Dict[str, Any]:
        command = self.require(task, "command")
        self.check_command(command)
        logger.info(f"Executing command for task {task.task_id}")
        return self.run_shell(command, self.timeout_for(task))


class ScriptTaskHandler(CommandTaskHandler):
    """
    Writes a script to a private temporary file and runs it.

    Payload: ``script``. The deny-list applies to the script text and the
    temporary file is always removed.
    """

    task_type = TaskType.RUN_SCRIPT

    def execute(self, task: Task) -> Dict[str, Any]:
        script = self.require(task, "script")
        self.check_command(script)

        suffix = ".bat" if self.is_windows else ".sh"
        fd, script_path = tempfile.mkstemp(prefix="fleet_agent_", suffix=suffix)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(script)
            os.chmod(script_path, 0o700)

            if self.is_windows:
                command = f'"{script_path}"'
            else:
                command = f"/bin/bash {shlex.quote(script_path)}"
            logger.info(f"Executing script for task {task.task_id} ({len(script)} bytes)")
            return self.run_shell(command, self.timeout_for(task))
        finally:
            try:
                os.remove(script_path)
            except FileNotFoundError:
                pass
