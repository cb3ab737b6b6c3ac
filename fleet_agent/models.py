"""
Task records exchanged with the control plane.

Tasks arrive as loosely shaped JSON; :meth:`Task.from_dict` accepts the
alternate field names the server has used over time. Results are reported
back through :meth:`TaskExecutionResult.to_dict`.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from .utils import utc_now, parse_iso8601, format_iso8601


class TaskType(Enum):
    RUN_COMMAND = "run_command"
    RUN_SCRIPT = "run_script"
    INSTALL_SOFTWARE = "install_software"
    APPLY_POLICY = "apply_policy"
    COLLECT_DATA = "collect_data"
    SYSTEM_CHECK = "system_check"

    @classmethod
    def parse(cls, value: Any) -> Union['TaskType', str]:
        """Returns the matching member, or the raw string for unknown types."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return str(value)


class TaskStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class Task:
    task_id: str
    type: Union[TaskType, str]
    payload: Dict[str, str] = field(default_factory=dict)
    priority: int = 0
    timeout_seconds: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def type_name(self) -> str:
        return self.type.value if isinstance(self.type, TaskType) else self.type

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        """
        Parses a task entry from the server.

        :param data: One element of the server's task list
        :type data: Dict[str, Any]
        :rtype: Task
        :raises ValueError: If the entry has no id or no type, or a non-object payload
        """
        if not isinstance(data, dict):
            raise ValueError(f"Task entry must be an object, got {type(data).__name__}")

        task_id = data.get("task_id") or data.get("id")
        task_type = data.get("type") or data.get("task_type")
        if not task_id or not task_type:
            raise ValueError("Task entry is missing its id or type")

        raw_payload = data.get("payload")
        if raw_payload is None:
            raw_payload = data.get("parameters")
        if raw_payload is not None and not isinstance(raw_payload, dict):
            raise ValueError(f"Task payload must be an object, got {type(raw_payload).__name__}")
        payload = {str(k): v if isinstance(v, str) else str(v) for k, v in (raw_payload or {}).items()}

        timeout = data.get("timeout")
        if timeout is None:
            timeout = data.get("timeout_seconds")

        return cls(
            task_id=str(task_id),
            type=TaskType.parse(task_type),
            payload=payload,
            priority=int(data.get("priority") or 0),
            timeout_seconds=int(timeout) if timeout is not None else None,
            created_at=parse_iso8601(data.get("created_at")),
        )


@dataclass
class TaskExecutionResult:
    task_id: str
    status: TaskStatus
    start_time: datetime = field(default_factory=utc_now)
    progress: float = 0.0
    message: str = ""
    result_payload: Dict[str, Any] = field(default_factory=dict)
    execution_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "start_time": format_iso8601(self.start_time),
            "progress": self.progress,
            "message": self.message,
            "result": self.result_payload,
            "execution_time": self.execution_time,
        }
