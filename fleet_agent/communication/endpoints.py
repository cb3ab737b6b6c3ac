"""
Control-plane endpoint table.
"""
from enum import Enum


class AuthMode(Enum):
    """How a request is authorized."""
    SERVICE_KEY = "service_key"
    BEARER = "bearer"


class Endpoint(Enum):
    """
    Every control-plane endpoint the agent talks to.

    Each member carries its path, HTTP method and authorization mode.
    Enrollment and token refresh are signed with the fixed service key;
    everything else uses the agent's access token.
    """
    ENROLL = ("/enroll-agent", "POST", AuthMode.SERVICE_KEY)
    TOKEN_REFRESH = ("/agent-token-refresh", "POST", AuthMode.SERVICE_KEY)
    GET_TASKS = ("/agent-get-tasks", "GET", AuthMode.BEARER)
    CHECK_IN = ("/agent-check-in", "POST", AuthMode.BEARER)
    UPDATE_TASK = ("/agent-update-task", "POST", AuthMode.BEARER)
    TELEMETRY = ("/agent-telemetry", "POST", AuthMode.BEARER)
    PROCESS_TELEMETRY = ("/process-agent-telemetry", "POST", AuthMode.BEARER)
    REPORT_DATA = ("/agent-report-data", "POST", AuthMode.BEARER)
    CHECK_STATUS = ("/check-agent-status", "POST", AuthMode.BEARER)

    def __init__(self, path: str, method: str, auth_mode: AuthMode):
        self.path = path
        self.method = method
        self.auth_mode = auth_mode

    @property
    def requires_bearer(self) -> bool:
        return self.auth_mode is AuthMode.BEARER
