"""
Test doubles and builders shared by the test modules.

HTTP traffic goes through ``FakeSession``, which stands in for
``requests.Session`` and answers per endpoint path.
"""
import json
import threading
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from fleet_agent.auth import CredentialPair
from fleet_agent.monitoring import HostFactProvider
from fleet_agent.utils import utc_now

SERVER_URL = "https://api.example.com"

Responder = Union[requests.Response, Exception, Callable[..., Union[requests.Response, Exception]]]


def make_response(status: int = 200, body: Any = None, text: Optional[str] = None) -> requests.Response:
    """Builds a real ``requests.Response`` with the given status and JSON (or raw text) body."""
    response = requests.Response()
    response.status_code = status
    if text is not None:
        response._content = text.encode("utf-8")
    elif body is not None:
        response._content = json.dumps(body).encode("utf-8")
    else:
        response._content = b""
    response.encoding = "utf-8"
    response.headers["Content-Type"] = "application/json"
    return response


class FakeSession:
    """
    Minimal stand-in for ``requests.Session``.

    ``routes`` maps an endpoint path to a responder or to a list of responders
    consumed in order (the last one repeats). A responder is a response, an
    exception to raise, or a callable receiving the call record.
    """

    def __init__(self):
        self.routes: Dict[str, Union[Responder, List[Responder]]] = {}
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self.closed = False

    def route(self, path: str, *responders: Responder) -> None:
        self.routes[path] = list(responders) if len(responders) > 1 else responders[0]

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        path = url.replace(SERVER_URL, "", 1)
        call = {"method": method, "url": url, "path": path, **kwargs}
        with self._lock:
            self.calls.append(call)
            responder = self.routes.get(path)
            if isinstance(responder, list):
                responder = responder.pop(0) if len(responder) > 1 else responder[0]

        if responder is None:
            return make_response(404, {"error": f"no route for {path}"})
        if callable(responder) and not isinstance(responder, requests.Response):
            responder = responder(call)
        if isinstance(responder, Exception):
            raise responder
        return responder

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [call for call in self.calls if call["path"] == path]

    def close(self) -> None:
        self.closed = True


class FakeHostFacts(HostFactProvider):
    """Deterministic host facts."""

    def __init__(self, usage: Optional[Dict[str, float]] = None):
        self.usage = usage or {"cpu_usage": 12.5, "memory_usage": 40.0, "disk_usage": 55.0}

    def get_device_info(self, serial_number=None):
        return {
            "hostname": "test-mac",
            "os": "Darwin",
            "osVersion": "14.5",
            "arch": "arm64",
            "cpu_model": "Apple M2",
            "total_memory": 17179869184,
            "mac_address": "aa:bb:cc:dd:ee:ff",
            "serial_number": serial_number or "N/A",
        }

    def get_usage_stats(self):
        return dict(self.usage)

    def get_hardware_info(self):
        return {"cpu_model": "Apple M2", "cpu_cores": 8, "total_memory": 17179869184}

    def get_software_info(self):
        return {"os_name": "Darwin", "os_version": "14.5"}

    def get_network_info(self):
        return {"hostname": "test-mac", "ip_address": "10.0.0.5", "interfaces": []}

    def get_security_info(self):
        return {"firewall": "enabled", "disk_encryption": "FileVault is On.", "gatekeeper": "assessments enabled"}

    def get_system_info(self):
        return {"hostname": "test-mac", "platform": "Darwin", "uptime_seconds": 3600}

    def get_processes(self, limit=20):
        return [{"pid": 1, "name": "launchd", "memory_percent": 0.1}][:limit]

    def get_applications(self):
        return ["Safari", "Terminal"]


def make_pair(access_token: str = "T1", refresh_token: str = "R1", agent_id: str = "agent-1",
              access_ttl: timedelta = timedelta(hours=1),
              refresh_age: timedelta = timedelta(0),
              refresh_ttl: timedelta = timedelta(days=30)) -> CredentialPair:
    now = utc_now()
    created = now - refresh_age
    return CredentialPair(
        access_token=access_token,
        refresh_token=refresh_token,
        agent_id=agent_id,
        access_expires_at=now + access_ttl,
        refresh_expires_at=created + refresh_ttl,
        issued_at=now,
        refresh_token_created_at=created,
    )


def token_response(access_token: str, refresh_token: str, agent_id: str = "agent-1",
                   expires_in: timedelta = timedelta(hours=1)) -> requests.Response:
    return make_response(200, {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "agent_id": agent_id,
        "expires_at": (utc_now() + expires_in).isoformat(),
    })


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Polls ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
