"""
Network client for the control-plane HTTP API.
"""
import threading
import time
from typing import Dict, Any, Optional, TYPE_CHECKING

import requests

from ..errors import (
    AgentNotFoundError,
    CredentialError,
    EnrollmentError,
    EnrollmentErrorKind,
    HttpError,
    ProtocolError,
    ReEnrollmentRequiredError,
    TransportError,
)
from ..utils import get_logger, mask_secret
from ..version import __version__
from .endpoints import Endpoint

if TYPE_CHECKING:
    from ..config import ConfigManager
    from ..auth import CredentialManager
    from ..core.notification_log import NotificationLog

logger = get_logger(__name__)

TOKEN_USED_MARKERS = ("Enrollment token has already been used", "Invalid enrollment token")
AGENT_EXISTS_MARKER = "Agent with this hostname already exists"


class NetworkClient:
    """
    HTTP client for the agent's control-plane endpoints.

    Handles request construction, per-endpoint authorization, transport
    retries with exponential backoff, the 401 refresh-and-retry loop with its
    circuit breaker, and translation of failures into typed errors.

    :ivar base_url: Server URL without a trailing slash.
    :ivar timeout: Request timeout in seconds.
    :ivar max_retries: Transport retries after the first attempt.
    :ivar max_refresh_attempts: Token refreshes allowed per call before giving up.
    """

    def __init__(self,
                 config: 'ConfigManager',
                 credential_manager: Optional['CredentialManager'] = None,
                 notifications: Optional['NotificationLog'] = None,
                 session: Optional[requests.Session] = None):
        """
        Initializes the network client.

        :param config: The configuration manager instance.
        :type config: ConfigManager
        :param credential_manager: Source of bearer tokens; may be attached later.
        :param notifications: Receives rate-limited enrollment error notifications.
        :param session: Pre-built requests session, mainly for tests.
        :raises ValueError: If `server_url` is not configured.
        """
        self.config = config
        server_url = self.config.get('server_url')
        if not server_url:
            raise ValueError("Base URL (server_url) not found in configuration.")

        self.base_url = str(server_url).rstrip('/')
        self.timeout = float(self.config.get('network.request_timeout_sec', 15))
        self.max_retries = int(self.config.get('network.max_retries', 3))
        self.backoff_base = float(self.config.get('network.backoff_base_sec', 1.0))
        self.max_refresh_attempts = int(self.config.get('network.max_refresh_attempts', 3))
        self.special_error_cooldown = float(self.config.get('network.special_error_cooldown_sec', 30))
        self.service_api_key = self.config.get('network.service_api_key', '')

        self.credential_manager = credential_manager
        self.notifications = notifications
        self._session = session or requests.Session()
        self._special_error_times: Dict[EnrollmentErrorKind, float] = {}
        self._special_error_lock = threading.Lock()

        if not self.service_api_key:
            logger.warning("No service API key configured (network.service_api_key). Enrollment and refresh will be unsigned.")
        logger.info(f"Network client initialized. Base URL: {self.base_url}, Timeout: {self.timeout}s, "
                    f"Retries: {self.max_retries}, Refresh budget: {self.max_refresh_attempts}")

    def attach_credential_manager(self, credential_manager: 'CredentialManager') -> None:
        self.credential_manager = credential_manager

    def reset_counters(self) -> None:
        """Forgets enrollment error cooldowns."""
        with self._special_error_lock:
            self._special_error_times.clear()

    def close(self) -> None:
        self._session.close()

    def request(self, endpoint: Endpoint, body: Optional[Dict[str, Any]] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Sends one logical request and returns the parsed JSON object.

        A 401 on a bearer endpoint refreshes the access token and retries. At
        most ``max_refresh_attempts`` refreshes happen per call; when they are
        spent the credentials are cleared and re-enrollment is required.

        :param endpoint: Target endpoint
        :type endpoint: Endpoint
        :param body: JSON body (sent as query parameters for GET endpoints)
        :type body: Optional[Dict[str, Any]]
        :param params: Extra query parameters
        :type params: Optional[Dict[str, Any]]
        :return: Parsed response object, ``{}`` for empty responses
        :rtype: Dict[str, Any]
        :raises TransportError: Connectivity failure after all retries
        :raises HttpError: Non-2xx response (AgentNotFoundError for 404 on bearer endpoints)
        :raises EnrollmentError: Rejected enrollment token or hostname conflict
        :raises ProtocolError: 2xx response that is not a JSON object
        :raises ReEnrollmentRequiredError: Authentication could not be recovered
        :raises CredentialError: No usable credentials for a bearer endpoint
        """
        refresh_attempts = 0
        while True:
            token = self._get_bearer_token() if endpoint.requires_bearer else None
            response = self._send_with_retry(endpoint, body, params, token)

            if response.status_code == 401 and endpoint.requires_bearer:
                if refresh_attempts >= self.max_refresh_attempts:
                    logger.error(f"Max refresh attempts ({self.max_refresh_attempts}) reached for {endpoint.path}, clearing credentials...")
                    if self.credential_manager is not None:
                        self.credential_manager.clear("Authentication failed after multiple refresh attempts",
                                                      notify_listeners=True)
                    raise ReEnrollmentRequiredError(
                        "Authentication failed after multiple refresh attempts. Please re-enroll the agent."
                    )

                refresh_attempts += 1
                logger.warning(f"401 Unauthorized from {endpoint.path}. Token refresh attempt "
                               f"{refresh_attempts}/{self.max_refresh_attempts}")
                try:
                    self.credential_manager.refresh_access_token(stale_access_token=token)
                except CredentialError as e:
                    raise ReEnrollmentRequiredError(f"Authentication failed: {e}") from e
                continue

            return self._handle_response(endpoint, response)

    # === INTERNALS ===

    def _get_bearer_token(self) -> str:
        if self.credential_manager is None:
            raise RuntimeError("Bearer endpoint requested but no credential manager is attached.")
        return self.credential_manager.get_access_token()

    def _get_auth_headers(self, endpoint: Endpoint, token: Optional[str]) -> Dict[str, str]:
        """
        Builds the authorization headers for an endpoint.

        :return: Header dictionary, empty when no service key is configured
        :rtype: Dict[str, str]
        """
        if endpoint.requires_bearer:
            return {'Authorization': f"Bearer {token}"}
        if self.service_api_key:
            return {'Authorization': f"Bearer {self.service_api_key}", 'apikey': self.service_api_key}
        return {}

    def _send_with_retry(self, endpoint: Endpoint, body: Optional[Dict[str, Any]],
                         params: Optional[Dict[str, Any]], token: Optional[str]) -> requests.Response:
        """
        Sends the request, retrying timeouts and connection failures with backoff.

        :raises TransportError: When every attempt failed at the transport level
        """
        url = f"{self.base_url}{endpoint.path}"
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': f"FleetAgent/{__version__}",
        }
        headers.update(self._get_auth_headers(endpoint, token))

        kwargs: Dict[str, Any] = {'headers': headers, 'timeout': self.timeout}
        if endpoint.method == 'GET':
            query = dict(body or {})
            query.update(params or {})
            kwargs['params'] = query or None
        else:
            kwargs['json'] = body if body is not None else {}
            if params:
                kwargs['params'] = params

        total_attempts = self.max_retries + 1
        for attempt in range(total_attempts):
            try:
                logger.debug(f"Making HTTP request: {endpoint.method} {url} (attempt {attempt + 1}/{total_attempts}, "
                             f"auth={endpoint.auth_mode.value}{'' if token is None else ' ' + mask_secret(token)})")
                response = self._session.request(endpoint.method, url, **kwargs)
                logger.debug(f"HTTP {response.status_code} from {endpoint.method} {url}")
                return response
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt + 1 >= total_attempts:
                    logger.error(f"Request to {url} failed after {total_attempts} attempts: {e}")
                    raise TransportError(f"Unable to reach {url}: {e}", attempts=total_attempts) from e
                delay = self.backoff_base * (2 ** attempt)
                logger.warning(f"Transport error on {endpoint.method} {url}: {e}. Retrying in {delay:.1f}s...")
                time.sleep(delay)
            except requests.exceptions.RequestException as e:
                logger.error(f"Request to {url} failed: {e}")
                raise TransportError(f"Request to {url} failed: {e}", attempts=attempt + 1) from e

        raise TransportError(f"Unable to reach {url}", attempts=total_attempts)

    def _handle_response(self, endpoint: Endpoint, response: requests.Response) -> Dict[str, Any]:
        status = response.status_code

        if not 200 <= status < 300:
            body = response.text or ""
            logger.error(f"HTTP error {status} from {endpoint.path}. Response: {body[:200]}")
            if endpoint is Endpoint.ENROLL:
                self._raise_for_enrollment(status, body)
            if status == 404 and endpoint.requires_bearer:
                raise AgentNotFoundError(status, body, f"Agent not found on server ({endpoint.path})")
            raise HttpError(status, body)

        if status == 204 or not response.content or not response.content.strip():
            return {}

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON response from {endpoint.path} (Status: {status}): {response.text[:200]}")
            raise ProtocolError(f"Invalid JSON response from {endpoint.path}") from e

        if not isinstance(data, dict):
            raise ProtocolError(f"Expected a JSON object from {endpoint.path}, got {type(data).__name__}")
        return data

    def _raise_for_enrollment(self, status: int, body: str) -> None:
        """Translates the known enrollment rejections into EnrollmentError."""
        if status == 401 and any(marker in body for marker in TOKEN_USED_MARKERS):
            notify = self._special_case_ready(EnrollmentErrorKind.TOKEN_INVALID)
            if notify:
                self._notify(
                    "enrollment_token_required",
                    "Enrollment token invalid. Generate a new token from the admin console and enter it manually."
                )
            else:
                logger.warning("Enrollment token error on cooldown, notification suppressed.")
            raise EnrollmentError(
                EnrollmentErrorKind.TOKEN_INVALID,
                "Enrollment token invalid. Please generate a new enrollment token and configure it.",
                rate_limited=not notify
            )

        if status == 409 and AGENT_EXISTS_MARKER in body:
            notify = self._special_case_ready(EnrollmentErrorKind.AGENT_EXISTS)
            if notify:
                self._notify(
                    "agent_already_exists",
                    "Agent with this hostname is already registered. Remove the existing agent or contact the administrator."
                )
            raise EnrollmentError(
                EnrollmentErrorKind.AGENT_EXISTS,
                "Agent with this hostname already exists. Remove the existing agent or contact your administrator.",
                rate_limited=not notify
            )

    def _special_case_ready(self, kind: EnrollmentErrorKind) -> bool:
        """True if the cooldown for ``kind`` has elapsed; stamps the time when it has."""
        now = time.monotonic()
        with self._special_error_lock:
            last = self._special_error_times.get(kind)
            if last is not None and now - last < self.special_error_cooldown:
                return False
            self._special_error_times[kind] = now
            return True

    def _notify(self, event: str, message: str) -> None:
        if self.notifications is not None:
            self.notifications.add(event, message)
