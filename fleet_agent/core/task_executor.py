"""
Task Executor module for dispatching tasks to their handlers.
"""
import time
from typing import Dict, Any, Optional, Type, TYPE_CHECKING

from ..errors import TaskExecutionError, UnsupportedTaskTypeError
from ..models import Task, TaskExecutionResult, TaskStatus, TaskType
from ..task_handlers import (
    BaseTaskHandler,
    CommandTaskHandler,
    ScriptTaskHandler,
    SoftwareTaskHandler,
    PolicyTaskHandler,
    DataCollectionTaskHandler,
    SystemCheckTaskHandler,
)
from ..utils import get_logger, utc_now

if TYPE_CHECKING:
    from ..config import ConfigManager
    from ..monitoring import HostFactProvider

logger = get_logger(__name__)

HANDLER_ERROR_TYPE = "HandlerError"

HANDLER_CLASSES: Dict[TaskType, Type[BaseTaskHandler]] = {
    TaskType.RUN_COMMAND: CommandTaskHandler,
    TaskType.RUN_SCRIPT: ScriptTaskHandler,
    TaskType.INSTALL_SOFTWARE: SoftwareTaskHandler,
    TaskType.APPLY_POLICY: PolicyTaskHandler,
    TaskType.COLLECT_DATA: DataCollectionTaskHandler,
    TaskType.SYSTEM_CHECK: SystemCheckTaskHandler,
}


class TaskExecutor:
    """
    Executes tasks using the handler registered for their type.

    :meth:`execute` never raises: unknown types, handler errors and non-zero
    exit codes all become a ``failed`` result.
    """

    def __init__(self, config: 'ConfigManager', host_facts: 'HostFactProvider'):
        """
        Initialize the task executor.

        :param config: Configuration manager instance.
        :param host_facts: Host fact provider handed to the handlers.
        :raises ValueError: if config or host_facts is None.
        """
        if not config:
            raise ValueError("ConfigManager instance is required for TaskExecutor.")
        if not host_facts:
            raise ValueError("HostFactProvider instance is required for TaskExecutor.")

        self.config = config
        self.host_facts = host_facts
        self._handlers: Dict[str, BaseTaskHandler] = {}

        self._register_handlers()
        logger.info(f"TaskExecutor initialized with handlers for types: {', '.join(self._handlers.keys())}")

    def _register_handlers(self):
        """Initializes and registers one handler per task type."""
        for task_type, handler_class in HANDLER_CLASSES.items():
            self._handlers[task_type.value] = handler_class(self.config, self.host_facts)
            logger.debug(f"Registered handler '{task_type.value}' using {handler_class.__name__}")

    @property
    def supported_types(self):
        return sorted(self._handlers)

    def execute(self, task: Task) -> TaskExecutionResult:
        """
        Runs a task to completion.

        :param task: Task received from the server
        :type task: Task
        :return: ``completed`` or ``failed`` result with timing filled in
        :rtype: TaskExecutionResult
        """
        start_time = utc_now()
        started = time.monotonic()
        logger.info(f"Executing task {task.task_id} (Type: {task.type_name})")

        try:
            handler = self._handlers.get(task.type_name)
            if handler is None:
                raise UnsupportedTaskTypeError(f"Task type '{task.type_name}' is not supported by this agent.")

            payload = handler.execute(task)
            exit_code = payload.get("exit_code")
            if exit_code is not None and exit_code != 0:
                status = TaskStatus.FAILED
                message = f"Exited with code {exit_code}"
            else:
                status = TaskStatus.COMPLETED
                message = "Task completed successfully"

        except TaskExecutionError as e:
            logger.error(f"Task {task.task_id} failed: {e}")
            status = TaskStatus.FAILED
            message = str(e)
            payload = self._create_error_payload(e.error_type, str(e))

        except Exception as e:
            logger.error(f"Handler for '{task.type_name}' raised an exception executing task '{task.task_id}': {e}",
                         exc_info=True)
            status = TaskStatus.FAILED
            message = f"Handler error: {e}"
            payload = self._create_error_payload(HANDLER_ERROR_TYPE, f"Handler error: {e}", type(e).__name__)

        execution_time = round(time.monotonic() - started, 3)
        logger.info(f"Task {task.task_id} finished with status {status.value} in {execution_time}s")
        return TaskExecutionResult(
            task_id=task.task_id,
            status=status,
            start_time=start_time,
            progress=1.0,
            message=message,
            result_payload=payload,
            execution_time=execution_time,
        )

    def _create_error_payload(self, error_type: str, message: str, exception_type: Optional[str] = None) -> Dict[str, Any]:
        """Helper to create the result payload for a failed task."""
        payload = {
            "error": message,
            "error_type": error_type,
        }
        if exception_type:
            payload["exception"] = exception_type
        return payload
