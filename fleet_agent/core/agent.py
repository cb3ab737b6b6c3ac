"""
Core Agent module: wires the components together and owns the connection state.
"""
import threading
from datetime import datetime
from typing import Optional, TYPE_CHECKING, Dict, Any, List

import requests

from ..auth import CredentialManager
from ..communication import NetworkClient, ServerConnector
from ..errors import (
    AgentError,
    AgentNotFoundError,
    CredentialError,
    CredentialErrorKind,
    EnrollmentError,
    ReEnrollmentRequiredError,
    SecretStoreError,
)
from ..identity import IdentityManager, AgentRegistration
from ..models import Task, TaskExecutionResult, TaskStatus
from ..monitoring import SystemMonitor
from ..storage import create_secret_store
from ..utils import get_logger, utc_now, format_iso8601
from ..version import __version__
from .connection_state import ConnectionState
from .notification_log import NotificationLog
from .periodic_job import PeriodicJob
from .task_executor import TaskExecutor

if TYPE_CHECKING:
    from ..config import ConfigManager
    from ..monitoring import HostFactProvider
    from ..storage import SecretStore

logger = get_logger(__name__)

JOB_TASK_POLL = "task_poll"
JOB_TELEMETRY = "telemetry"
JOB_DEVICE_DATA = "device_data"
JOB_HEARTBEAT = "heartbeat"

PROCESS_TELEMETRY_LIMIT = 10

TASK_POLL_MODE_POLL = "poll"
TASK_POLL_MODE_CHECK_IN = "check_in"


class Agent:
    """
    The main Agent class orchestrating enrollment, credentials and the periodic jobs.

    Once authenticated the agent runs four jobs: task polling, telemetry,
    device data reporting and heartbeats. Errors inside a job are routed by
    type: an unknown agent or unrecoverable authentication resets the agent,
    anything else is recorded as a notification and the job carries on.

    Resets triggered from background threads (jobs, credential timers) run on
    a dedicated thread so that a job never waits on itself.
    """

    def __init__(self,
                 config_manager: 'ConfigManager',
                 secret_store: Optional['SecretStore'] = None,
                 host_facts: Optional['HostFactProvider'] = None,
                 notifications: Optional[NotificationLog] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize the agent and its components.

        :param config_manager: Configuration manager instance
        :param secret_store: Store for registration and credentials; built from config when omitted
        :param host_facts: Host fact provider; a :class:`SystemMonitor` when omitted
        :param notifications: Notification log; built from ``notifications.capacity`` when omitted
        :param session: requests session for the network client, mainly for tests
        """
        logger.info("Initializing Agent...")
        self.config = config_manager
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()

        if notifications is None:
            notifications = NotificationLog(self.config.get('notifications.capacity', 50))
        self.notifications = notifications
        self.secret_store = secret_store if secret_store is not None else create_secret_store(self.config)
        self.host_facts = host_facts if host_facts is not None else SystemMonitor()
        self.identity_manager = IdentityManager(self.config, self.secret_store)
        self.network_client = NetworkClient(self.config, notifications=self.notifications, session=session)
        self.credential_manager = CredentialManager(self.config, self.secret_store,
                                                    self.network_client, self.notifications)
        self.network_client.attach_credential_manager(self.credential_manager)
        self.server_connector = ServerConnector(self.config, self.network_client, self.credential_manager)
        self.task_executor = TaskExecutor(self.config, self.host_facts)
        self.credential_manager.add_clear_listener(self._on_credentials_lost)

        self.task_poll_mode = self.config.get('agent.task_poll_mode', TASK_POLL_MODE_POLL)
        if self.task_poll_mode not in (TASK_POLL_MODE_POLL, TASK_POLL_MODE_CHECK_IN):
            logger.warning(f"Unknown agent.task_poll_mode '{self.task_poll_mode}', using '{TASK_POLL_MODE_POLL}'.")
            self.task_poll_mode = TASK_POLL_MODE_POLL

        self.registration: Optional[AgentRegistration] = None
        self._device_info: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None
        self.last_heartbeat: Optional[datetime] = None
        self.last_telemetry: Optional[datetime] = None
        self.last_device_data: Optional[datetime] = None
        self.last_task_poll: Optional[datetime] = None
        self.tasks_completed = 0
        self.tasks_failed = 0

        self._enroll_lock = threading.Lock()
        self._reset_lock = threading.RLock()
        self._reset_request_lock = threading.Lock()
        self._reset_pending = False
        self._shutdown_event = threading.Event()

        self._jobs_lock = threading.Lock()
        self._jobs_started = False
        self.jobs: Dict[str, PeriodicJob] = {
            JOB_TASK_POLL: PeriodicJob(JOB_TASK_POLL, self.config.get('agent.task_poll_interval_sec', 30),
                                       self._poll_tasks, self._on_job_error),
            JOB_TELEMETRY: PeriodicJob(JOB_TELEMETRY, self.config.get('agent.telemetry_interval_sec', 900),
                                       self._send_telemetry, self._on_job_error),
            JOB_DEVICE_DATA: PeriodicJob(JOB_DEVICE_DATA, self.config.get('agent.device_data_interval_sec', 300),
                                         self._send_device_data, self._on_job_error),
            JOB_HEARTBEAT: PeriodicJob(JOB_HEARTBEAT, self.config.get('agent.heartbeat_interval_sec', 3600),
                                       self._send_heartbeat, self._on_job_error),
        }
        logger.info(f"Agent initialized (version {__version__}). Server: {self.network_client.base_url}")

    # === STATE ===

    def get_state(self) -> ConnectionState:
        """
        Gets the current connection state thread-safely.

        :rtype: ConnectionState
        """
        with self._state_lock:
            return self._state

    def _set_state(self, new_state: ConnectionState) -> bool:
        """
        Sets the connection state thread-safely and logs the transition.

        :param new_state: New state to set
        :type new_state: ConnectionState
        :return: True if the state changed
        :rtype: bool
        """
        with self._state_lock:
            if self._state != new_state:
                logger.info(f"State transition: {self._state.name} -> {new_state.name}")
                self._state = new_state
                return True
            return False

    # === LIFECYCLE ===

    def initialize(self) -> bool:
        """
        Restores the previous enrollment, or enrolls with the configured token.

        :return: True if the agent ends up authenticated
        :rtype: bool
        """
        logger.info("================ Initializing Agent ================")
        registration = self.identity_manager.load_registration()
        if registration is None:
            logger.info("No registration found.")
            return self._enroll_from_config()

        self.registration = registration
        pair = self.credential_manager.load()
        if pair is None:
            logger.warning("Registration found but credentials are missing or expired. Clearing registration.")
            self._clear_registration()
            return self._enroll_from_config()

        logger.info(f"Restored enrollment for device {registration.device_id} (Agent ID: {pair.agent_id})")
        self._set_state(ConnectionState.AUTHENTICATED)
        self.start_jobs()
        return True

    def load_saved_state(self) -> bool:
        """
        Reads the stored registration and credentials without starting
        timers or jobs, for status reporting from a separate process.

        :return: True if both are present
        :rtype: bool
        """
        self.registration = self.identity_manager.load_registration()
        pair = self.credential_manager.load(schedule_timers=False) if self.registration else None
        if self.registration is not None and pair is not None:
            self._set_state(ConnectionState.AUTHENTICATED)
            return True
        return False

    def _enroll_from_config(self) -> bool:
        token = self.config.get('agent.enrollment_token')
        if token:
            return self.enroll(str(token))
        self._set_state(ConnectionState.DISCONNECTED)
        self.notifications.add(
            "enrollment_token_required",
            "Agent is not enrolled. Provide an enrollment token to connect to the server."
        )
        return False

    def enroll(self, token: str) -> bool:
        """
        Enrolls the device and starts the periodic jobs.

        Failures leave the agent in ``ERROR`` and are not retried.

        :param token: One-time enrollment token
        :type token: str
        :return: True if enrollment succeeded
        :rtype: bool
        """
        if not token or not token.strip():
            logger.error("Enrollment requested without a token.")
            return False

        with self._enroll_lock:
            self._set_state(ConnectionState.CONNECTING)
            persisted = False
            try:
                device_id = self.identity_manager.discover_device_id()
                device_info = self.host_facts.get_device_info(device_id)
                pair = self.server_connector.enroll(token.strip(), device_info)
                self._set_state(ConnectionState.CONNECTED)

                registration = self.identity_manager.build_registration(
                    token.strip(),
                    device_id=device_id,
                    hostname=device_info.get("hostname"),
                    platform_name=device_info.get("os"),
                )
                # Credentials first: store() rejects pairs that are already expired.
                persisted = True
                self.credential_manager.store(pair)
                self.identity_manager.store_registration(registration)
            except AgentError as e:
                logger.error(f"Enrollment failed: {e}")
                if persisted:
                    self.credential_manager.clear("Enrollment did not complete")
                    self._clear_registration()
                self.last_error = str(e)
                self._set_state(ConnectionState.ERROR)
                if not isinstance(e, EnrollmentError):
                    self.notifications.add("enrollment_failed", f"Enrollment failed: {e}",
                                           {"error_type": type(e).__name__})
                return False

            self.registration = registration
            self._device_info = device_info
            self.last_error = None
            self._set_state(ConnectionState.AUTHENTICATED)

        self.notifications.add("agent_enrolled", f"Agent enrolled successfully (Agent ID: {pair.agent_id})",
                               {"agent_id": pair.agent_id, "device_id": device_id})
        self.start_jobs()
        return True

    def start_jobs(self) -> None:
        """Starts the four periodic jobs once."""
        with self._jobs_lock:
            if self._jobs_started:
                logger.debug("Periodic jobs already started.")
                return
            self._jobs_started = True
            for job in self.jobs.values():
                job.start()
        logger.info("Periodic jobs started.")

    def stop_jobs(self) -> None:
        with self._jobs_lock:
            if not self._jobs_started:
                return
            self._jobs_started = False
            for job in self.jobs.values():
                job.stop()
        logger.info("Periodic jobs stopped.")

    def reset(self, reason: str = "Agent reset requested", event: str = "agent_reset") -> None:
        """
        Stops the jobs and forgets the enrollment.

        :param reason: Logged and recorded in the notification
        :param event: Notification event name
        """
        with self._reset_lock:
            logger.warning(f"Resetting agent: {reason}")
            self.stop_jobs()
            self.credential_manager.clear(reason)
            self._clear_registration()
            self.network_client.reset_counters()
            self._set_state(ConnectionState.DISCONNECTED)
        self.notifications.add(event, reason)

    def complete_reset(self) -> None:
        """Reset plus an empty notification log."""
        self.reset("Complete reset requested")
        self.notifications.clear()
        self.last_error = None
        self.last_heartbeat = self.last_telemetry = self.last_device_data = self.last_task_poll = None
        self.tasks_completed = self.tasks_failed = 0
        logger.info("Complete reset finished.")

    def shutdown(self) -> None:
        """Stops the jobs and credential timers. Safe to call more than once."""
        if self._shutdown_event.is_set():
            logger.debug("Shutdown called but agent already stopped.")
            return
        logger.info("================ Initiating Shutdown ================")
        self._shutdown_event.set()
        self.stop_jobs()
        self.credential_manager.shutdown()
        self.network_client.close()
        logger.info("================ Agent Shutdown Complete ================")

    def run_forever(self) -> None:
        """Initializes and blocks until :meth:`shutdown` or Ctrl+C."""
        try:
            self.initialize()
            if self.get_state() != ConnectionState.AUTHENTICATED:
                logger.warning("Agent is not enrolled. Waiting for enrollment or shutdown.")
            while not self._shutdown_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received (Ctrl+C). Stopping agent...")
        finally:
            self.shutdown()

    def _clear_registration(self) -> None:
        try:
            self.identity_manager.clear()
        except SecretStoreError as e:
            logger.error(f"Failed to clear registration: {e}")
        self.registration = None
        self._device_info = None

    # === BACKGROUND RESET ===

    def _on_credentials_lost(self, reason: str) -> None:
        # initialize() and enroll() handle their own failures before AUTHENTICATED.
        if self.get_state() != ConnectionState.AUTHENTICATED:
            logger.debug(f"Credentials lost while not authenticated ({reason}); no reset needed.")
            return
        self._request_reset(reason)

    def _request_reset(self, reason: str, event: str = "agent_reset") -> None:
        """Runs :meth:`reset` on its own thread; concurrent requests collapse into one."""
        with self._reset_request_lock:
            if self._reset_pending or self._shutdown_event.is_set():
                return
            self._reset_pending = True

        def run():
            try:
                self.reset(reason, event)
            finally:
                with self._reset_request_lock:
                    self._reset_pending = False

        threading.Thread(target=run, name="AgentResetThread", daemon=True).start()

    def _on_job_error(self, job_name: str, error: Exception) -> None:
        """Routes an exception raised by a periodic job."""
        if isinstance(error, AgentNotFoundError):
            logger.error(f"Job '{job_name}': agent not found on server. Clearing enrollment.")
            self._request_reset("Agent not found on server. Re-enrollment required.", event="agent_not_found")
            return

        self.last_error = str(error)
        if isinstance(error, (ReEnrollmentRequiredError, CredentialError)):
            logger.error(f"Job '{job_name}': authentication lost ({error}). Resetting agent.")
            self.notifications.add(f"{job_name}_failed", str(error), {"error_type": type(error).__name__})
            self._request_reset(f"Authentication lost: {error}")
            return

        if isinstance(error, AgentError):
            logger.error(f"Job '{job_name}' failed: {error}")
        else:
            logger.error(f"Unexpected error in job '{job_name}': {error}", exc_info=True)
        self.notifications.add(f"{job_name}_failed", str(error), {"error_type": type(error).__name__})

    # === JOB BODIES ===

    def _require_agent_id(self) -> str:
        pair = self.credential_manager.current()
        if pair is None:
            raise CredentialError(CredentialErrorKind.NO_CREDENTIALS, "No credentials available. Enrollment required.")
        return pair.agent_id

    def _serial_number(self) -> str:
        return self.registration.device_id if self.registration else ""

    def _get_device_info(self) -> Dict[str, Any]:
        if self._device_info is None:
            self._device_info = self.host_facts.get_device_info(self._serial_number() or None)
        return self._device_info

    def _poll_tasks(self) -> None:
        agent_id = self._require_agent_id()
        if self.task_poll_mode == TASK_POLL_MODE_CHECK_IN:
            tasks = self.server_connector.check_in(agent_id, self.host_facts.get_usage_stats())
        else:
            tasks = self.server_connector.fetch_tasks(agent_id)
        self.last_task_poll = utc_now()
        for task in tasks:
            self._process_task(agent_id, task)

    def _process_task(self, agent_id: str, task: Task) -> TaskExecutionResult:
        """
        Reports a task in progress, executes it and reports the outcome.

        A failed report is recorded and the task still runs. Errors that
        require a reset propagate to the job.
        """
        logger.info(f"Processing task {task.task_id} (Type: {task.type_name})")
        self._report_task(
            agent_id, TaskExecutionResult(task_id=task.task_id, status=TaskStatus.IN_PROGRESS, message="Task started")
        )

        result = self.task_executor.execute(task)
        self._report_task(agent_id, result)

        data = {"task_id": task.task_id, "type": task.type_name, "execution_time": result.execution_time}
        if result.status == TaskStatus.COMPLETED:
            self.tasks_completed += 1
            self.notifications.add("task_completed", f"Task {task.task_id} ({task.type_name}) completed", data)
        else:
            self.tasks_failed += 1
            data["error"] = result.result_payload.get("error")
            self.notifications.add("task_failed", f"Task {task.task_id} ({task.type_name}) failed: {result.message}",
                                   data)
        return result

    def _report_task(self, agent_id: str, result: TaskExecutionResult) -> bool:
        try:
            self.server_connector.update_task(agent_id, result)
            return True
        except (AgentNotFoundError, ReEnrollmentRequiredError, CredentialError):
            raise
        except AgentError as e:
            logger.error(f"Failed to report task {result.task_id} as {result.status.value}: {e}")
            self.notifications.add("task_report_failed",
                                   f"Could not report task {result.task_id} as {result.status.value}: {e}",
                                   {"task_id": result.task_id, "status": result.status.value,
                                    "error_type": type(e).__name__})
            return False

    def _send_telemetry(self) -> None:
        agent_id = self._require_agent_id()
        stats = self.host_facts.get_usage_stats()
        metrics = {
            "cpu_usage": stats.get("cpu_usage", 0.0),
            "memory_usage": stats.get("memory_usage", 0.0),
            "disk_usage": stats.get("disk_usage", 0.0),
            "timestamp": format_iso8601(utc_now()),
        }
        self.server_connector.send_telemetry(agent_id, self._serial_number(), metrics)
        self.server_connector.send_process_telemetry(agent_id, self.host_facts.get_processes(PROCESS_TELEMETRY_LIMIT))
        self.last_telemetry = utc_now()
        self.notifications.add("telemetry_sent", "Telemetry reported", metrics)

    def _send_device_data(self) -> None:
        agent_id = self._require_agent_id()
        device_info = self._get_device_info()
        snapshot = {
            "hardware": self.host_facts.get_hardware_info(),
            "software": self.host_facts.get_software_info(),
            "security": self.host_facts.get_security_info(),
            "network": self.host_facts.get_network_info(),
            "device_id": self._serial_number(),
            "hostname": device_info.get("hostname"),
            "collected_at": format_iso8601(utc_now()),
        }
        self.server_connector.send_device_data(agent_id, self._serial_number(), snapshot)
        self.last_device_data = utc_now()
        self.notifications.add("device_data_sent", "Device data reported")

    def _send_heartbeat(self) -> None:
        agent_id = self._require_agent_id()
        device_info = self._get_device_info()
        self.server_connector.send_heartbeat(agent_id, device_info.get("hostname", ""), device_info.get("os", ""),
                                             device_info.get("osVersion", ""))
        self.last_heartbeat = utc_now()
        self.notifications.add("heartbeat_sent", "Heartbeat sent")

    # === ON-DEMAND ACTIONS ===

    def _run_now(self, job_name: str) -> bool:
        try:
            self.jobs[job_name].target()
            return True
        except Exception as e:
            self._on_job_error(job_name, e)
            return False

    def force_token_refresh(self) -> bool:
        """
        Refreshes the access token immediately.

        :return: True if a new token is in effect
        :rtype: bool
        """
        try:
            self.credential_manager.refresh_access_token()
            return True
        except AgentError as e:
            logger.error(f"Forced token refresh failed: {e}")
            self.last_error = str(e)
            return False

    def force_telemetry_report(self) -> bool:
        return self._run_now(JOB_TELEMETRY)

    def send_device_data_now(self) -> bool:
        return self._run_now(JOB_DEVICE_DATA)

    def test_connection(self) -> bool:
        """
        Round-trips a heartbeat to the server.

        :rtype: bool
        """
        pair = self.credential_manager.current()
        if pair is None:
            logger.warning("Cannot test connection: agent is not enrolled.")
            return False
        return self.server_connector.test_connection(pair.agent_id, self._get_device_info())

    # === STATUS ===

    def get_status(self) -> Dict[str, Any]:
        """
        Snapshot of the agent's state. Never touches the network.

        :rtype: Dict[str, Any]
        """
        registration = self.registration
        return {
            "state": self.get_state().value,
            "version": __version__,
            "server_url": self.network_client.base_url,
            "device_id": registration.device_id if registration else None,
            "hostname": registration.hostname if registration else None,
            "enrolled_at": format_iso8601(registration.enrolled_at) if registration else None,
            "credentials": self.credential_manager.describe(),
            "jobs": {name: job.is_running for name, job in self.jobs.items()},
            "last_task_poll": format_iso8601(self.last_task_poll),
            "last_telemetry": format_iso8601(self.last_telemetry),
            "last_device_data": format_iso8601(self.last_device_data),
            "last_heartbeat": format_iso8601(self.last_heartbeat),
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "last_error": self.last_error,
            "notifications": len(self.notifications),
        }

    def get_status_summary(self) -> str:
        """Human readable status block for the CLI."""
        status = self.get_status()
        credentials = status["credentials"]
        running = [name for name, alive in status["jobs"].items() if alive]
        lines: List[str] = [
            f"State:          {status['state']}",
            f"Version:        {status['version']}",
            f"Server:         {status['server_url']}",
            f"Device ID:      {status['device_id'] or 'not enrolled'}",
        ]
        if credentials.get("has_credentials"):
            lines.append(f"Agent ID:       {credentials['agent_id']}")
            lines.append(f"Access expires: {credentials['access_expires_at']}")
            lines.append(f"Rotation due:   {credentials['rotation_due_at']}")
        else:
            lines.append("Credentials:    none")
        lines.append(f"Jobs running:   {', '.join(running) if running else 'none'}")
        lines.append(f"Tasks:          {status['tasks_completed']} completed, {status['tasks_failed']} failed")
        lines.append(f"Last heartbeat: {status['last_heartbeat'] or 'never'}")
        if status["last_error"]:
            lines.append(f"Last error:     {status['last_error']}")
        return "\n".join(lines)

    def is_healthy(self) -> bool:
        """True when authenticated with credentials and every job running."""
        return (self.get_state() == ConnectionState.AUTHENTICATED
                and self.credential_manager.has_credentials()
                and all(job.is_running for job in self.jobs.values()))
