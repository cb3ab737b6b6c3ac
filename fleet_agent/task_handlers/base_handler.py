"""
Base task handler class providing common functionality for all task handlers.
"""
import platform
import subprocess
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, TYPE_CHECKING

from ..errors import MissingParameterError
from ..utils import get_logger

if TYPE_CHECKING:
    from ..config import ConfigManager
    from ..models import Task, TaskType
    from ..monitoring import HostFactProvider

logger = get_logger(__name__)

EXIT_CODE_TIMEOUT = 124
EXIT_CODE_PERMISSION_DENIED = 126
EXIT_CODE_NOT_FOUND = 127
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024
TRUNCATION_NOTICE = "\n[output truncated]"


class BaseTaskHandler(ABC):
    """
    Abstract base class for all task handlers.

    A handler executes one task type and returns the result payload. Failures
    that should be reported as a failed task raise
    :class:`~fleet_agent.errors.TaskExecutionError`; a payload with a non-zero
    ``exit_code`` is also reported as failed by the executor.
    """

    task_type: 'TaskType'

    def __init__(self, config: 'ConfigManager', host_facts: Optional['HostFactProvider'] = None):
        """
        Initialize the base task handler.

        :param config: The configuration manager instance, providing access to
                      shared configuration settings
        :type config: ConfigManager
        :param host_facts: Provider of host facts, for handlers that report them
        :type host_facts: Optional[HostFactProvider]
        :raises ValueError: If the config parameter is None
        """
        if not config:
            raise ValueError("ConfigManager instance is required for BaseTaskHandler.")
        self.config = config
        self.host_facts = host_facts
        self.default_timeout: int = int(self.config.get('task_executor.default_timeout_sec', 300))
        default_encoding = 'utf-8' if platform.system() != 'Windows' else 'cp1252'
        self.output_encoding: str = self.config.get('task_executor.console_encoding', default_encoding)
        self.max_output_bytes: int = int(self.config.get('task_executor.max_output_bytes', DEFAULT_MAX_OUTPUT_BYTES))
        logger.debug(f"{self.__class__.__name__} initialized.")

    @abstractmethod
    def execute(self, task: 'Task') -> Dict[str, Any]:
        """
        Execute a task and return its result payload.

        :param task: The task to execute
        :type task: Task
        :return: Result payload reported to the server
        :rtype: Dict[str, Any]
        :raises TaskExecutionError: When the task cannot be carried out
        """

    def require(self, task: 'Task', name: str) -> str:
        """
        Returns a non-empty payload value.

        :raises MissingParameterError: If the value is absent or blank
        """
        value = task.payload.get(name, "")
        if not value.strip():
            raise MissingParameterError(name, task.type_name)
        return value

    def timeout_for(self, task: 'Task') -> int:
        return task.timeout_seconds or self.default_timeout

    def run_process(self, args: List[str], timeout: int) -> Dict[str, Any]:
        """
        Runs a process and captures its output.

        Timeouts, missing executables and permission errors are reported with
        the conventional shell exit codes 124, 127 and 126. Output and error
        text beyond ``task_executor.max_output_bytes`` is cut and the payload
        is flagged ``truncated``.

        :param args: Program and arguments
        :type args: List[str]
        :param timeout: Seconds before the process is killed
        :type timeout: int
        :return: ``output`` (stdout), ``exit_code`` and, when non-empty, ``error`` (stderr)
        :rtype: Dict[str, Any]
        """
        payload: Dict[str, Any] = {"output": "", "exit_code": -1}
        try:
            process = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding=self.output_encoding,
                errors='replace',
                timeout=timeout,
                check=False
            )
            payload["output"] = process.stdout or ""
            payload["exit_code"] = process.returncode
            if process.stderr:
                payload["error"] = process.stderr
            self._limit_output(payload)
            logger.info(f"Process '{args[0]}' finished. ExitCode={process.returncode}")

        except subprocess.TimeoutExpired:
            logger.error(f"Process '{args[0]}' timed out after {timeout} seconds.")
            payload["error"] = f"Error: Command timed out after {timeout} seconds."
            payload["exit_code"] = EXIT_CODE_TIMEOUT

        except FileNotFoundError:
            logger.error(f"Executable not found: '{args[0]}'")
            payload["error"] = f"Error: Command not found: '{args[0]}'. Ensure it's installed and in the system PATH."
            payload["exit_code"] = EXIT_CODE_NOT_FOUND

        except PermissionError as e:
            logger.error(f"Permission denied executing '{args[0]}': {e}")
            payload["error"] = f"Error: Permission denied to execute command: {e}"
            payload["exit_code"] = EXIT_CODE_PERMISSION_DENIED

        return payload

    def _limit_output(self, payload: Dict[str, Any]) -> None:
        for key in ("output", "error"):
            text = payload.get(key)
            if not text:
                continue
            encoded = text.encode('utf-8', errors='replace')
            if len(encoded) <= self.max_output_bytes:
                continue
            payload[key] = encoded[:self.max_output_bytes].decode('utf-8', errors='ignore') + TRUNCATION_NOTICE
            payload["truncated"] = True
            logger.warning(f"Process {key} truncated from {len(encoded)} to {self.max_output_bytes} bytes.")
