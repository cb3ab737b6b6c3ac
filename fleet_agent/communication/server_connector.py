"""
Server connector: the agent's control-plane operations on top of the network client.
"""
from typing import Dict, Any, List, Optional, TYPE_CHECKING

from ..errors import AgentError
from ..models import Task, TaskExecutionResult
from ..utils import get_logger, utc_now, format_iso8601
from ..version import __version__
from .endpoints import Endpoint

if TYPE_CHECKING:
    from ..config import ConfigManager
    from ..auth import CredentialManager, CredentialPair
    from . import NetworkClient

logger = get_logger(__name__)

DEVICE_INFO_KEYS = ("hostname", "os", "osVersion", "arch", "cpu_model", "total_memory",
                    "mac_address", "serial_number")


class ServerConnector:
    """
    Translates agent operations into control-plane requests.

    Errors from the network client propagate unchanged; callers decide how to
    react to them.
    """

    def __init__(self,
                 config_manager: 'ConfigManager',
                 network_client: 'NetworkClient',
                 credential_manager: 'CredentialManager'):
        """
        Initialize the ServerConnector.

        :param config_manager: Configuration manager instance
        :param network_client: Client used for every request
        :param credential_manager: Builds credential pairs from enrollment responses
        """
        self.config = config_manager
        self.network_client = network_client
        self.credential_manager = credential_manager
        logger.info("ServerConnector initialized.")

    def enroll(self, token: str, device_info: Dict[str, Any]) -> 'CredentialPair':
        """
        Exchanges an enrollment token for the agent's first credential pair.

        The pair is returned, not stored.

        :param token: One-time enrollment token
        :type token: str
        :param device_info: Host facts; see ``DEVICE_INFO_KEYS``
        :type device_info: Dict[str, Any]
        :return: Credentials issued by the server
        :rtype: CredentialPair
        :raises EnrollmentError: Token rejected or hostname already registered
        :raises CredentialError: Response lacks tokens or agent id
        """
        body = {
            "token": token,
            "deviceInfo": {key: device_info.get(key, "") for key in DEVICE_INFO_KEYS},
        }
        logger.info(f"Enrolling device {device_info.get('serial_number')} ({device_info.get('hostname')})...")
        response = self.network_client.request(Endpoint.ENROLL, body)
        pair = self.credential_manager.build_pair(response)
        logger.info(f"Enrollment accepted. Agent ID: {pair.agent_id}")
        return pair

    def fetch_tasks(self, agent_id: str) -> List[Task]:
        """
        Polls for pending tasks.

        :param agent_id: Agent identifier issued at enrollment
        :type agent_id: str
        :return: Parsed tasks; malformed entries are skipped
        :rtype: List[Task]
        """
        response = self.network_client.request(Endpoint.GET_TASKS, params={"agent_id": agent_id})
        return self._parse_tasks(response)

    def check_in(self, agent_id: str, snapshot: Optional[Dict[str, Any]] = None) -> List[Task]:
        """Reports a status snapshot and returns any tasks handed back."""
        body = {
            "agent_id": agent_id,
            "status": "online",
            "timestamp": format_iso8601(utc_now()),
            "system_info": snapshot or {},
        }
        response = self.network_client.request(Endpoint.CHECK_IN, body)
        return self._parse_tasks(response)

    def update_task(self, agent_id: str, result: TaskExecutionResult) -> Dict[str, Any]:
        """
        Reports task progress or outcome.

        :param agent_id: Agent identifier
        :type agent_id: str
        :param result: Current state of the task
        :type result: TaskExecutionResult
        :rtype: Dict[str, Any]
        """
        body: Dict[str, Any] = {
            "task_id": result.task_id,
            "agent_id": agent_id,
            "status": result.status.value,
            "result": result.result_payload,
            "execution_time": result.execution_time,
        }
        if result.message:
            body["message"] = result.message
        if result.status.is_terminal:
            body["completed_at"] = format_iso8601(utc_now())
        logger.debug(f"Updating task {result.task_id} -> {result.status.value}")
        return self.network_client.request(Endpoint.UPDATE_TASK, body)

    def send_telemetry(self, agent_id: str, serial_number: str, metrics: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(metrics)
        body.update({"agent_id": agent_id, "serial_number": serial_number})
        return self.network_client.request(Endpoint.TELEMETRY, body)

    def send_process_telemetry(self, agent_id: str, processes: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Sends the top process list to the process telemetry endpoint."""
        body = {
            "agent_id": agent_id,
            "processes": processes,
            "timestamp": format_iso8601(utc_now()),
        }
        return self.network_client.request(Endpoint.PROCESS_TELEMETRY, body)

    def send_device_data(self, agent_id: str, serial_number: str, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "agent_id": agent_id,
            "serial_number": serial_number,
            "device_data": snapshot,
        }
        logger.info("Sending device data report...")
        return self.network_client.request(Endpoint.REPORT_DATA, body)

    def send_heartbeat(self, agent_id: str, hostname: str, platform: str, os_version: str) -> Dict[str, Any]:
        """
        Tells the server the agent is alive.

        :rtype: Dict[str, Any]
        """
        body = {
            "agent_id": agent_id,
            "hostname": hostname,
            "status": "online",
            "last_seen": format_iso8601(utc_now()),
            "version": __version__,
            "platform": platform,
            "os_version": os_version,
        }
        return self.network_client.request(Endpoint.CHECK_STATUS, body)

    def test_connection(self, agent_id: str, device_info: Dict[str, Any]) -> bool:
        """
        Sends a heartbeat and reports whether the server answered.

        :return: True if the round trip succeeded
        :rtype: bool
        """
        try:
            self.send_heartbeat(agent_id, device_info.get("hostname", ""), device_info.get("os", ""),
                                device_info.get("osVersion", ""))
            logger.info("Connection test succeeded.")
            return True
        except AgentError as e:
            logger.warning(f"Connection test failed: {e}")
            return False

    def _parse_tasks(self, response: Dict[str, Any]) -> List[Task]:
        entries = response.get("tasks") or []
        if not isinstance(entries, list):
            logger.warning(f"Ignoring task list of unexpected type {type(entries).__name__}")
            return []

        tasks: List[Task] = []
        for entry in entries:
            try:
                tasks.append(Task.from_dict(entry))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed task entry: {e}")
        if tasks:
            logger.info(f"Received {len(tasks)} task(s) from server.")
        return tasks
