"""
Device identity discovery and enrollment record persistence.
"""
import json
import os
import platform
import re
import socket
import subprocess
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from ..errors import NoIdentitySourceError, SecretStoreError
from ..utils import get_logger, utc_now, parse_iso8601, format_iso8601
from ..version import __version__

if TYPE_CHECKING:
    from ..config import ConfigManager
    from ..storage import SecretStore

logger = get_logger(__name__)

REGISTRATION_ACCOUNT_SUFFIX = "registration"

_PLACEHOLDER_SERIALS = {
    "", "0", "none", "null", "unknown", "n/a", "na", "not specified", "not available",
    "default string", "system serial number", "to be filled by o.e.m.", "to be filled by oem",
    "0123456789", "serialnumber",
}
_SERIAL_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-_.:]{2,127}$")
_IOREG_SERIAL_PATTERN = re.compile(r'"IOPlatformSerialNumber"\s*=\s*"([^"]*)"')


@dataclass(frozen=True)
class AgentRegistration:
    """Enrollment record created once per successful enrollment."""
    device_id: str
    hostname: str
    platform: str
    enrollment_token: str
    enrolled_at: datetime
    agent_version: str = __version__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["enrolled_at"] = format_iso8601(self.enrolled_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentRegistration':
        enrolled_at = parse_iso8601(data.get("enrolled_at"))
        if not data.get("device_id") or enrolled_at is None:
            raise ValueError("Registration record is missing device_id or enrolled_at")
        return cls(
            device_id=str(data["device_id"]),
            hostname=str(data.get("hostname", "")),
            platform=str(data.get("platform", "")),
            enrollment_token=str(data.get("enrollment_token", "")),
            enrolled_at=enrolled_at,
            agent_version=str(data.get("agent_version", __version__)),
        )


def is_well_formed_device_id(value: Optional[str]) -> bool:
    """
    True when ``value`` looks like a real serial number or UUID.

    :param value: Candidate identifier
    :rtype: bool
    """
    if not value:
        return False
    candidate = value.strip()
    if candidate.lower() in _PLACEHOLDER_SERIALS:
        return False
    if set(candidate) <= {"0", "-", "F", "f"}:
        return False
    return bool(_SERIAL_PATTERN.match(candidate))


class IdentityManager:
    """
    Discovers the device's stable identity and keeps the enrollment record.

    Discovery tries a fast system-property lookup, then a structured hardware
    inventory query, then a low-level registry query. Each lookup runs as a
    separate subprocess with its own timeout.
    """

    def __init__(self, config: 'ConfigManager', secret_store: 'SecretStore',
                 system_name: Optional[str] = None):
        """
        :param config: Agent configuration
        :type config: ConfigManager
        :param secret_store: Store holding the enrollment record
        :type secret_store: SecretStore
        :param system_name: Override of ``platform.system()``, mainly for tests
        :type system_name: Optional[str]
        """
        self.config = config
        self.secret_store = secret_store
        self.system_name = system_name or platform.system()
        self.method_timeout = float(self.config.get('identity.method_timeout_sec', 5))
        self.service_name = self.config.get('storage.service_name', 'FleetAgent')
        namespace = self.config.get('storage.namespace', 'default')
        self.account = f"{namespace}.{REGISTRATION_ACCOUNT_SUFFIX}"
        self._device_id: Optional[str] = None
        logger.debug(f"IdentityManager initialized for {self.system_name} (lookup timeout {self.method_timeout}s)")

    # === DISCOVERY ===

    def discover_device_id(self, use_cache: bool = True) -> str:
        """
        Returns the first well-formed identifier produced by the platform identity sources.

        :param use_cache: Reuse a previously discovered value
        :type use_cache: bool
        :return: Hardware serial number or equivalent stable identifier
        :rtype: str
        :raises NoIdentitySourceError: If every identity source failed
        """
        if use_cache and self._device_id:
            return self._device_id

        for method_name, method in self._discovery_methods():
            try:
                value = method()
            except (OSError, subprocess.SubprocessError, ValueError, AttributeError, IndexError) as e:
                logger.debug(f"Identity source '{method_name}' failed: {e}")
                continue

            if is_well_formed_device_id(value):
                self._device_id = value.strip()
                logger.info(f"Device identity discovered via {method_name}: {self._device_id}")
                return self._device_id
            logger.debug(f"Identity source '{method_name}' returned no usable value: {value!r}")

        raise NoIdentitySourceError(f"No device identity source succeeded on {self.system_name}")

    def _discovery_methods(self) -> List[Tuple[str, Callable[[], Optional[str]]]]:
        if self.system_name == 'Darwin':
            return [
                ("sysctl", self._read_sysctl),
                ("system_profiler", self._read_system_profiler),
                ("ioreg", self._read_ioreg),
            ]
        if self.system_name == 'Windows':
            return [
                ("wmic", self._read_wmic),
                ("powershell", self._read_powershell_bios),
                ("registry", self._read_machine_guid),
            ]
        return [
            ("dmi", self._read_dmi_serial),
            ("dmidecode", self._read_dmidecode),
            ("machine-id", self._read_machine_id),
        ]

    def _run(self, args: List[str]) -> str:
        """Runs a lookup command under the per-method timeout and returns stripped stdout."""
        completed = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=self.method_timeout,
            check=False
        )
        if completed.returncode != 0:
            raise OSError(f"{args[0]} exited with code {completed.returncode}")
        return completed.stdout.strip()

    def _read_sysctl(self) -> Optional[str]:
        return self._run(["/usr/sbin/sysctl", "-n", "hw.serialnumber"])

    def _read_system_profiler(self) -> Optional[str]:
        output = self._run(["/usr/sbin/system_profiler", "SPHardwareDataType", "-json"])
        data = json.loads(output)
        hardware = data.get("SPHardwareDataType") if isinstance(data, dict) else None
        if not isinstance(hardware, list) or not hardware or not isinstance(hardware[0], dict):
            raise ValueError("Unexpected system_profiler output layout")
        return hardware[0].get("serial_number")

    def _read_ioreg(self) -> Optional[str]:
        output = self._run(["/usr/sbin/ioreg", "-l", "-k", "IOPlatformSerialNumber"])
        match = _IOREG_SERIAL_PATTERN.search(output)
        return match.group(1) if match else None

    def _read_dmi_serial(self) -> Optional[str]:
        with open("/sys/class/dmi/id/product_serial", "r", encoding="utf-8") as f:
            return f.read().strip()

    def _read_dmidecode(self) -> Optional[str]:
        return self._run(["dmidecode", "-s", "system-serial-number"])

    def _read_machine_id(self) -> Optional[str]:
        for path in ("/etc/machine-id", "/var/lib/dbus/machine-id"):
            if os.path.exists(path):
                with open(path, "r", encoding="utf-8") as f:
                    return f.read().strip()
        return None

    def _read_wmic(self) -> Optional[str]:
        lines = [line.strip() for line in self._run(["wmic", "bios", "get", "serialnumber"]).splitlines()]
        values = [line for line in lines if line and line.lower() != "serialnumber"]
        return values[0] if values else None

    def _read_powershell_bios(self) -> Optional[str]:
        return self._run(["powershell", "-NoProfile", "-Command",
                          "(Get-CimInstance -ClassName Win32_BIOS).SerialNumber"])

    def _read_machine_guid(self) -> Optional[str]:
        output = self._run(["reg", "query", r"HKLM\SOFTWARE\Microsoft\Cryptography", "/v", "MachineGuid"])
        for line in output.splitlines():
            if "MachineGuid" in line:
                return line.split()[-1]
        return None

    # === REGISTRATION RECORD ===

    def build_registration(self, enrollment_token: str, device_id: Optional[str] = None,
                           hostname: Optional[str] = None,
                           platform_name: Optional[str] = None) -> AgentRegistration:
        """
        Creates a registration record stamped with the current time and agent version.

        :param enrollment_token: Token the agent enrolled with
        :type enrollment_token: str
        :param device_id: Identifier to record; discovered when omitted
        :type device_id: Optional[str]
        :rtype: AgentRegistration
        """
        return AgentRegistration(
            device_id=device_id or self.discover_device_id(),
            hostname=hostname or socket.gethostname(),
            platform=platform_name or self.system_name,
            enrollment_token=enrollment_token,
            enrolled_at=utc_now(),
        )

    def store_registration(self, record: AgentRegistration) -> None:
        """
        Persists the registration record, replacing any previous one.

        :raises SecretStoreError: If the store cannot be written
        """
        self.secret_store.set(self.service_name, self.account, json.dumps(record.to_dict()))
        self._device_id = record.device_id
        logger.info(f"Registration stored for device {record.device_id} ({record.hostname})")

    def load_registration(self) -> Optional[AgentRegistration]:
        """
        Reads the registration record.

        :return: The stored record, or None when absent or unreadable
        :rtype: Optional[AgentRegistration]
        """
        try:
            blob = self.secret_store.get(self.service_name, self.account)
        except SecretStoreError as e:
            logger.error(f"Could not read registration: {e}")
            return None
        if not blob:
            return None

        try:
            return AgentRegistration.from_dict(json.loads(blob))
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Stored registration is corrupt and will be ignored: {e}")
            return None

    def clear(self) -> None:
        """Erases the registration record."""
        self.secret_store.delete(self.service_name, self.account)
        logger.info("Registration cleared.")

    def is_ready(self) -> bool:
        """True iff a registration record exists."""
        return self.load_registration() is not None
