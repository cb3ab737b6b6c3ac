"""
Exception hierarchy for the fleet agent.

Network and credential errors surface to the periodic job that issued the
call. Task errors are caught by the task executor and turned into failed
results.
"""
from enum import Enum
from typing import Optional


class AgentError(Exception):
    """Base class for all agent errors."""


# --- Network ---

class NetworkError(AgentError):
    """Base class for failures talking to the control plane."""


class TransportError(NetworkError):
    """Timeout or connectivity failure after all retries were spent."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class HttpError(NetworkError):
    """
    Non-2xx response from the server.

    :ivar status: HTTP status code
    :ivar body: Raw response body text
    """

    def __init__(self, status: int, body: str = "", message: Optional[str] = None):
        self.status = status
        self.body = body or ""
        super().__init__(message or f"HTTP error {status}: {self.body[:200]}")


class AgentNotFoundError(HttpError):
    """The server no longer knows this agent (404 on an authenticated call)."""


class ProtocolError(NetworkError):
    """A successful response whose body is not a JSON object."""


class ReEnrollmentRequiredError(NetworkError):
    """Authentication could not be recovered; credentials were cleared."""


# --- Credentials ---

class CredentialErrorKind(Enum):
    NO_CREDENTIALS = "no_credentials"
    REFRESH_TOKEN_EXPIRED = "refresh_token_expired"
    INVALID_RESPONSE = "invalid_response"


class CredentialError(AgentError):
    """Credential state that cannot be fixed by retrying."""

    def __init__(self, kind: CredentialErrorKind, message: Optional[str] = None):
        self.kind = kind
        super().__init__(message or kind.value.replace('_', ' '))


# --- Enrollment ---

class EnrollmentErrorKind(Enum):
    TOKEN_INVALID = "token_invalid"
    AGENT_EXISTS = "agent_exists"


class EnrollmentError(AgentError):
    """
    Enrollment rejected in a way that needs operator action.

    :ivar kind: Which rejection the server reported
    :ivar rate_limited: True when the matching notification was suppressed by the cooldown
    """

    def __init__(self, kind: EnrollmentErrorKind, message: str, rate_limited: bool = False):
        self.kind = kind
        self.rate_limited = rate_limited
        super().__init__(message)


# --- Identity and storage ---

class NoIdentitySourceError(AgentError):
    """No device identity discovery method produced a usable value."""


class SecretStoreError(AgentError):
    """The secret store could not read or write a value."""


# --- Task execution ---

class TaskExecutionError(AgentError):
    """Base class for errors reported as a failed task result."""

    error_type = "TaskExecutionError"


class UnsupportedTaskTypeError(TaskExecutionError):
    error_type = "UnsupportedTaskType"


class MissingParameterError(TaskExecutionError):
    error_type = "MissingParameter"

    def __init__(self, parameter: str, task_type: str = ""):
        self.parameter = parameter
        where = f" for {task_type}" if task_type else ""
        super().__init__(f"Missing required parameter '{parameter}'{where}")


class SecurityViolationError(TaskExecutionError):
    error_type = "SecurityViolation"


class UnsupportedPackageManagerError(TaskExecutionError):
    error_type = "UnsupportedPackageManager"


class UnsupportedPolicyError(TaskExecutionError):
    error_type = "UnsupportedPolicy"
