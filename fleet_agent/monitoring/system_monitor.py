"""
System monitoring functionality: host facts and resource usage.
"""
import json
import os
import platform
import socket
import subprocess
import time
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

import psutil

from ..utils import get_logger, utc_now, parse_iso8601, format_iso8601

logger = get_logger(__name__)

NOT_AVAILABLE = "N/A"
QUERY_TIMEOUT_SEC = 5


class HostFactProvider(ABC):
    """
    Source of facts about the host the agent runs on.

    Implementations never raise for an individual fact; a value that cannot
    be read is reported as ``"N/A"`` or ``0``.
    """

    @abstractmethod
    def get_device_info(self, serial_number: Optional[str] = None) -> Dict[str, Any]:
        """Facts sent with enrollment: hostname, os, osVersion, arch, cpu_model, total_memory, mac_address, serial_number."""

    @abstractmethod
    def get_usage_stats(self) -> Dict[str, float]:
        """CPU, memory and system disk usage percentages."""

    @abstractmethod
    def get_hardware_info(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_software_info(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_network_info(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_security_info(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_system_info(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_processes(self, limit: int = 20) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_applications(self) -> List[str]:
        pass


class SystemMonitor(HostFactProvider):
    """
    Host facts collected with psutil and the platform/socket/uuid modules.

    Platform-specific queries (sysctl, socketfilterfw, fdesetup, wmic) run as
    subprocesses with a short timeout. All operations fail gracefully with
    logging when a value cannot be retrieved.
    """

    def __init__(self, system_name: Optional[str] = None):
        """
        :param system_name: Override of ``platform.system()``, mainly for tests
        :type system_name: Optional[str]
        """
        self.system_name = system_name or platform.system()
        self.system_drive = 'C:\\' if self.system_name == 'Windows' else '/'
        logger.debug(f"SystemMonitor initialized for {self.system_name}")

    # === USAGE ===

    def get_usage_stats(self) -> Dict[str, float]:
        """
        Gets current CPU, memory and system drive usage percentages.

        :return: Dictionary with ``cpu_usage``, ``memory_usage`` and ``disk_usage``
        :rtype: Dict[str, float]
        """
        stats = {"cpu_usage": 0.0, "memory_usage": 0.0, "disk_usage": 0.0}
        try:
            stats["cpu_usage"] = psutil.cpu_percent(interval=0.1)
            stats["memory_usage"] = psutil.virtual_memory().percent
        except Exception as e:
            logger.error(f"Error collecting CPU/memory usage: {e}", exc_info=True)

        try:
            stats["disk_usage"] = psutil.disk_usage(self.system_drive).percent
        except (OSError, FileNotFoundError) as e:
            logger.warning(f"Could not read disk usage for {self.system_drive}: {e}")

        logger.debug(f"System usage stats collected: {stats}")
        return stats

    # === IDENTITY FACTS ===

    def get_device_info(self, serial_number: Optional[str] = None) -> Dict[str, Any]:
        """
        Collects the facts sent with enrollment.

        :param serial_number: Device identifier discovered by the identity manager
        :rtype: Dict[str, Any]
        """
        return {
            "hostname": self._hostname(),
            "os": self.system_name,
            "osVersion": self._os_version(),
            "arch": platform.machine() or NOT_AVAILABLE,
            "cpu_model": self._cpu_model(),
            "total_memory": self._total_memory(),
            "mac_address": self._mac_address(),
            "serial_number": serial_number or NOT_AVAILABLE,
        }

    def get_hardware_info(self) -> Dict[str, Any]:
        """
        Gathers CPU, memory and disk information.

        :return: Dictionary containing hardware details
        :rtype: Dict[str, Any]
        """
        logger.debug("Collecting hardware information...")
        hardware_info: Dict[str, Any] = {
            "cpu_model": self._cpu_model(),
            "cpu_cores": 0,
            "cpu_threads": 0,
            "architecture": platform.machine() or NOT_AVAILABLE,
            "total_memory": self._total_memory(),
            "total_disk_space": 0,
            "free_disk_space": 0,
        }

        try:
            hardware_info["cpu_cores"] = psutil.cpu_count(logical=False) or 0
            hardware_info["cpu_threads"] = psutil.cpu_count(logical=True) or 0
        except Exception as e:
            logger.error(f"Error getting CPU count: {e}", exc_info=True)

        try:
            disk = psutil.disk_usage(self.system_drive)
            hardware_info["total_disk_space"] = disk.total
            hardware_info["free_disk_space"] = disk.free
        except OSError as e:
            logger.warning(f"Could not read disk space for {self.system_drive}: {e}")

        logger.debug(f"Hardware Info: {json.dumps(hardware_info, indent=2)}")
        return hardware_info

    def get_software_info(self) -> Dict[str, Any]:
        return {
            "os_name": self.system_name,
            "os_version": self._os_version(),
            "kernel_version": platform.release() or NOT_AVAILABLE,
            "python_version": platform.python_version(),
            "boot_time": self._boot_time(),
        }

    def get_network_info(self) -> Dict[str, Any]:
        """
        Hostname, primary address and per-interface addresses.

        :rtype: Dict[str, Any]
        """
        network_info: Dict[str, Any] = {
            "hostname": self._hostname(),
            "ip_address": NOT_AVAILABLE,
            "mac_address": self._mac_address(),
            "interfaces": [],
        }

        try:
            network_info["ip_address"] = socket.gethostbyname(socket.gethostname())
        except (socket.gaierror, OSError):
            logger.warning("Could not determine IP address (hostname not resolvable).")

        try:
            for name, addresses in psutil.net_if_addrs().items():
                network_info["interfaces"].append({
                    "name": name,
                    "addresses": [addr.address for addr in addresses if addr.address],
                })
        except Exception as e:
            logger.error(f"Error listing network interfaces: {e}", exc_info=True)

        return network_info

    def get_security_info(self) -> Dict[str, Any]:
        """
        Firewall, disk encryption and code-signing status where the platform exposes them.

        :rtype: Dict[str, Any]
        """
        security_info = {
            "firewall": NOT_AVAILABLE,
            "disk_encryption": NOT_AVAILABLE,
            "gatekeeper": NOT_AVAILABLE,
        }
        if self.system_name == 'Darwin':
            security_info["firewall"] = self._run_query(
                ["/usr/libexec/ApplicationFirewall/socketfilterfw", "--getglobalstate"])
            security_info["disk_encryption"] = self._run_query(["fdesetup", "status"])
            security_info["gatekeeper"] = self._run_query(["spctl", "--status"])
        elif self.system_name == 'Windows':
            security_info["firewall"] = self._run_query(["netsh", "advfirewall", "show", "allprofiles", "state"])
            security_info["disk_encryption"] = self._run_query(["manage-bde", "-status", "C:"])
        else:
            security_info["firewall"] = self._run_query(["ufw", "status"])
        return security_info

    def get_system_info(self) -> Dict[str, Any]:
        uptime = 0
        boot = 0.0
        try:
            boot = psutil.boot_time()
            uptime = int(time.time() - boot)
        except Exception as e:
            logger.error(f"Error reading boot time: {e}", exc_info=True)

        return {
            "hostname": self._hostname(),
            "platform": self.system_name,
            "os_version": self._os_version(),
            "architecture": platform.machine() or NOT_AVAILABLE,
            "uptime_seconds": uptime,
            "boot_time": self._boot_time() if boot else NOT_AVAILABLE,
            "timestamp": format_iso8601(utc_now()),
        }

    def get_processes(self, limit: int = 20) -> List[Dict[str, Any]]:
        """
        The processes using the most memory.

        :param limit: Maximum number of entries
        :type limit: int
        :rtype: List[Dict[str, Any]]
        """
        processes: List[Dict[str, Any]] = []
        for proc in psutil.process_iter(['pid', 'name', 'username', 'cpu_percent', 'memory_percent']):
            info = proc.info
            processes.append({
                "pid": info.get('pid'),
                "name": info.get('name') or NOT_AVAILABLE,
                "user": info.get('username') or NOT_AVAILABLE,
                "cpu_percent": info.get('cpu_percent') or 0.0,
                "memory_percent": round(info.get('memory_percent') or 0.0, 2),
            })
        processes.sort(key=lambda p: p["memory_percent"], reverse=True)
        return processes[:max(limit, 0)]

    def get_applications(self) -> List[str]:
        """Installed application bundles; only macOS is inventoried."""
        if self.system_name != 'Darwin':
            return []
        applications = []
        for directory in ("/Applications", os.path.expanduser("~/Applications")):
            try:
                applications.extend(name[:-4] for name in os.listdir(directory) if name.endswith(".app"))
            except OSError:
                continue
        return sorted(set(applications))

    # === HELPERS ===

    def _hostname(self) -> str:
        try:
            return socket.gethostname()
        except OSError as e:
            logger.warning(f"Could not read hostname: {e}")
            return NOT_AVAILABLE

    def _os_version(self) -> str:
        if self.system_name == 'Darwin':
            version = platform.mac_ver()[0]
            if version:
                return version
        return platform.version() or platform.release() or NOT_AVAILABLE

    def _cpu_model(self) -> str:
        if self.system_name == 'Darwin':
            model = self._run_query(["/usr/sbin/sysctl", "-n", "machdep.cpu.brand_string"])
            if model != NOT_AVAILABLE:
                return model
        elif self.system_name == 'Linux':
            try:
                with open("/proc/cpuinfo", "r", encoding="utf-8") as f:
                    for line in f:
                        if line.startswith("model name"):
                            return line.split(":", 1)[1].strip()
            except OSError as e:
                logger.debug(f"Could not read /proc/cpuinfo: {e}")
        return platform.processor() or NOT_AVAILABLE

    def _total_memory(self) -> int:
        try:
            return psutil.virtual_memory().total
        except Exception as e:
            logger.error(f"Error reading total memory: {e}", exc_info=True)
            return 0

    def _mac_address(self) -> str:
        node = uuid.getnode()
        return ":".join(f"{(node >> shift) & 0xff:02x}" for shift in range(40, -8, -8))

    def _boot_time(self) -> str:
        try:
            return format_iso8601(parse_iso8601(psutil.boot_time()))
        except Exception as e:
            logger.error(f"Error reading boot time: {e}", exc_info=True)
            return NOT_AVAILABLE

    def _run_query(self, args: List[str]) -> str:
        """Runs a read-only command and returns its stripped output, or "N/A"."""
        try:
            result = subprocess.run(args, capture_output=True, text=True, check=False, timeout=QUERY_TIMEOUT_SEC)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Query {args[0]} unavailable: {e}")
            return NOT_AVAILABLE
        output = result.stdout.strip()
        if result.returncode != 0 or not output:
            logger.debug(f"Query {args[0]} failed. Code: {result.returncode}, Stderr: {result.stderr.strip()}")
            return NOT_AVAILABLE
        return output
