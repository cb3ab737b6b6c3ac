"""
Credential Manager: owns the access/refresh token pair and its lifecycle.
"""
import datetime
import json
import threading
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from ..communication.endpoints import Endpoint
from ..errors import (
    AgentError,
    CredentialError,
    CredentialErrorKind,
    HttpError,
    SecretStoreError,
)
from ..utils import get_logger, utc_now, parse_iso8601, format_iso8601, format_interval
from .credentials import CredentialPair, validate_token_format

if TYPE_CHECKING:
    from ..config import ConfigManager
    from ..storage import SecretStore
    from ..communication import NetworkClient
    from ..core.notification_log import NotificationLog

logger = get_logger(__name__)

CREDENTIALS_ACCOUNT_SUFFIX = "credentials"
INVALID_REFRESH_STATUSES = (400, 401, 403)
INVALID_REFRESH_MARKER = "invalid refresh token"

ClearListener = Callable[[str], None]


class CredentialManager:
    """
    Single writer of the agent's :class:`CredentialPair`.

    Readers get immutable snapshots through :meth:`current` or a bearer
    token through :meth:`get_access_token`. Refreshes are serialized by one
    lock so concurrent callers trigger at most one network refresh.

    Two one-shot timers exist per stored pair: access refresh shortly before
    the access token expires, and rotation once the refresh token reaches
    the rotation age. Both are replaced whenever a new pair is stored.
    """

    def __init__(self,
                 config: 'ConfigManager',
                 secret_store: 'SecretStore',
                 network_client: Optional['NetworkClient'] = None,
                 notifications: Optional['NotificationLog'] = None):
        """
        :param config: Agent configuration
        :param secret_store: Store the pair is persisted to
        :param network_client: Client used for the refresh endpoint
        :param notifications: Optional notification log for lifecycle events
        """
        self.config = config
        self.secret_store = secret_store
        self.network_client = network_client
        self.notifications = notifications

        self.refresh_buffer = datetime.timedelta(seconds=self.config.get('credentials.refresh_buffer_sec', 300))
        self.rotation_age = datetime.timedelta(days=self.config.get('credentials.rotation_age_days', 29))
        self.rotation_retry_sec = float(self.config.get('credentials.rotation_retry_sec', 3600))
        self.default_access_ttl = datetime.timedelta(seconds=self.config.get('credentials.default_access_ttl_sec', 3600))
        self.default_refresh_ttl = datetime.timedelta(days=self.config.get('credentials.default_refresh_ttl_days', 30))

        self.service_name = self.config.get('storage.service_name', 'FleetAgent')
        namespace = self.config.get('storage.namespace', 'default')
        self.account = f"{namespace}.{CREDENTIALS_ACCOUNT_SUFFIX}"

        self._pair: Optional[CredentialPair] = None
        self._state_lock = threading.RLock()
        self._refresh_lock = threading.Lock()
        self._refresh_timer: Optional[threading.Timer] = None
        self._rotation_timer: Optional[threading.Timer] = None
        self._generation = 0
        self._clear_listeners: List[ClearListener] = []
        self.last_refresh_at: Optional[datetime.datetime] = None

        logger.info(f"CredentialManager initialized. Refresh buffer={self.refresh_buffer}, "
                    f"rotation age={self.rotation_age}, rotation retry={self.rotation_retry_sec}s")

    def add_clear_listener(self, callback: ClearListener) -> None:
        """
        Registers a callback invoked with a reason whenever credentials are
        lost involuntarily (expired or rejected refresh token, 401 budget spent).
        """
        self._clear_listeners.append(callback)

    # === READ ACCESS ===

    def current(self) -> Optional[CredentialPair]:
        """Snapshot of the current pair, or None."""
        with self._state_lock:
            return self._pair

    def has_credentials(self) -> bool:
        return self.current() is not None

    def get_access_token(self) -> str:
        """
        Returns a bearer token, refreshing first when it is about to expire.

        :return: A usable access token
        :rtype: str
        :raises CredentialError: NO_CREDENTIALS when nothing is stored,
            REFRESH_TOKEN_EXPIRED when the pair can no longer be refreshed
        """
        pair = self.current()
        if pair is None:
            raise CredentialError(CredentialErrorKind.NO_CREDENTIALS, "No credentials available. Enrollment required.")

        if pair.is_refresh_expired():
            self.clear("Refresh token expired", notify_listeners=True)
            raise CredentialError(CredentialErrorKind.REFRESH_TOKEN_EXPIRED, "Refresh token expired. Re-enrollment required.")

        if not pair.needs_access_refresh(buffer=self.refresh_buffer):
            return pair.access_token

        logger.info("Access token is expiring, refreshing before use...")
        return self.refresh_access_token(stale_access_token=pair.access_token).access_token

    def describe(self) -> Dict[str, Any]:
        """Non-sensitive summary of the current pair for status output."""
        pair = self.current()
        if pair is None:
            return {"has_credentials": False}
        return {
            "has_credentials": True,
            "agent_id": pair.agent_id,
            "access_expires_at": format_iso8601(pair.access_expires_at),
            "refresh_expires_at": format_iso8601(pair.refresh_expires_at),
            "rotation_due_at": format_iso8601(pair.rotation_due_at(self.rotation_age)),
            "last_refresh_at": format_iso8601(self.last_refresh_at),
        }

    # === LIFECYCLE ===

    def load(self, schedule_timers: bool = True) -> Optional[CredentialPair]:
        """
        Installs the persisted pair, if any, and schedules its timers.

        A pair whose refresh token already expired is erased. An overdue
        rotation runs synchronously before this returns; an overdue access
        refresh runs immediately on its timer.

        :param schedule_timers: False to install the pair for read-only use
        :return: The pair in effect after loading, or None
        :rtype: Optional[CredentialPair]
        """
        try:
            blob = self.secret_store.get(self.service_name, self.account)
        except SecretStoreError as e:
            logger.error(f"Could not read stored credentials: {e}")
            return None
        if not blob:
            logger.info("No stored credentials found.")
            return None

        try:
            pair = CredentialPair.from_dict(json.loads(blob))
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Stored credentials are corrupt and will be erased: {e}")
            self.clear("Stored credentials corrupt")
            return None

        if pair.is_refresh_expired():
            logger.warning(f"Stored refresh token expired at {format_iso8601(pair.refresh_expires_at)}. Erasing credentials.")
            self.clear("Refresh token expired")
            return None

        if not schedule_timers:
            with self._state_lock:
                self._pair = pair
            logger.info(f"Loaded credentials for agent {pair.agent_id} (timers not scheduled)")
            return pair

        rotation_due = pair.needs_rotation(rotation_age=self.rotation_age)
        self._install(pair, persist=False, schedule_rotation=not rotation_due)
        logger.info(f"Loaded credentials for agent {pair.agent_id}")
        if rotation_due:
            logger.info("Stored refresh token is due for rotation. Rotating before first use.")
            self.rotate_refresh_token()
        return self.current()

    def store(self, pair: CredentialPair) -> None:
        """
        Atomically replaces the current pair, persists it and reschedules both timers.

        :param pair: New credential pair; both expiries must lie in the future
        :type pair: CredentialPair
        :raises CredentialError: INVALID_RESPONSE when an expiry is not in the future
        """
        self._store(pair, schedule_rotation=True)

    def _store(self, pair: CredentialPair, schedule_rotation: bool) -> None:
        now = utc_now()
        if pair.access_expires_at <= now or pair.refresh_expires_at <= now:
            raise CredentialError(
                CredentialErrorKind.INVALID_RESPONSE,
                f"Credential expiries must be in the future (access={format_iso8601(pair.access_expires_at)}, "
                f"refresh={format_iso8601(pair.refresh_expires_at)})"
            )
        self._install(pair, persist=True, schedule_rotation=schedule_rotation)

    def _install(self, pair: CredentialPair, persist: bool, schedule_rotation: bool = True) -> None:
        with self._state_lock:
            self._pair = pair
            self._generation += 1
            generation = self._generation
            if persist:
                try:
                    self.secret_store.set(self.service_name, self.account, json.dumps(pair.to_dict()))
                    logger.debug(f"Credentials persisted for agent {pair.agent_id}")
                except SecretStoreError as e:
                    logger.critical(f"Credentials updated but FAILED TO SAVE LOCALLY: {e}. Agent will need to re-enroll after restart.")
            self._schedule_timers(pair, generation, schedule_rotation)

    def clear(self, reason: str = "Credentials cleared", notify_listeners: bool = False) -> None:
        """
        Drops the pair from memory and storage and cancels both timers.

        :param reason: Logged and passed to listeners
        :param notify_listeners: Call the clear listeners (used for involuntary loss)
        """
        with self._state_lock:
            had_pair = self._pair is not None
            self._pair = None
            self._generation += 1
            self._cancel_timers()
            try:
                self.secret_store.delete(self.service_name, self.account)
            except SecretStoreError as e:
                logger.error(f"Failed to delete stored credentials: {e}")

        logger.warning(f"Credentials cleared: {reason}")
        if had_pair:
            self._notify("credentials_cleared", reason)
        if notify_listeners:
            for callback in list(self._clear_listeners):
                try:
                    callback(reason)
                except Exception as e:
                    logger.error(f"Credential clear listener failed: {e}", exc_info=True)

    def shutdown(self) -> None:
        """Cancels both timers. The pair stays persisted."""
        with self._state_lock:
            self._generation += 1
            self._cancel_timers()
        logger.debug("CredentialManager timers cancelled.")

    # === REFRESH AND ROTATION ===

    def refresh_access_token(self, stale_access_token: Optional[str] = None) -> CredentialPair:
        """
        Exchanges the refresh token for a new pair.

        :param stale_access_token: The token the caller found unusable. When
            the current token differs, another caller already refreshed and the
            current pair is returned without a network call.
        :type stale_access_token: Optional[str]
        :return: The pair now in effect
        :rtype: CredentialPair
        :raises CredentialError: When no pair exists or the server rejected the refresh token
        :raises NetworkError: On transient failures; the current pair is kept
        """
        with self._refresh_lock:
            pair = self.current()
            if pair is None:
                raise CredentialError(CredentialErrorKind.NO_CREDENTIALS, "No credentials to refresh.")
            if stale_access_token is not None and pair.access_token != stale_access_token:
                logger.debug("Access token was already refreshed by another caller.")
                return pair
            if pair.is_refresh_expired():
                self.clear("Refresh token expired", notify_listeners=True)
                raise CredentialError(CredentialErrorKind.REFRESH_TOKEN_EXPIRED, "Refresh token expired. Re-enrollment required.")

            logger.info(f"Refreshing tokens for agent: {pair.agent_id}")
            try:
                new_pair = self._request_new_pair(pair)
                reused_and_due = (new_pair.refresh_token == pair.refresh_token
                                  and new_pair.needs_rotation(rotation_age=self.rotation_age))
                self._store(new_pair, schedule_rotation=not reused_and_due)
                if reused_and_due:
                    self._schedule_rotation_retry()
            except AgentError as e:
                logger.error(f"Token refresh failed: {e}")
                self._notify("token_refresh_failed", f"Failed to refresh access token: {e}")
                raise

            self.last_refresh_at = utc_now()
            self._notify("token_refreshed", "Access token refreshed successfully")
            return new_pair

    def rotate_refresh_token(self, force: bool = False) -> Optional[CredentialPair]:
        """
        Proactively replaces the refresh token before its hard expiry.

        Uses the refresh endpoint. On a transient failure exactly one retry is
        scheduled after ``credentials.rotation_retry_sec``.

        :param force: Rotate even if the refresh token is not yet due
        :return: The new pair, or None when rotation did not happen
        :rtype: Optional[CredentialPair]
        """
        with self._refresh_lock:
            pair = self.current()
            if pair is None:
                logger.debug("Rotation skipped: no credentials.")
                return None
            if not force and not pair.needs_rotation(rotation_age=self.rotation_age):
                logger.debug("Rotation skipped: refresh token was already replaced.")
                return pair

            logger.info(f"Starting refresh token rotation for agent: {pair.agent_id}")
            try:
                new_pair = self._request_new_pair(pair)
            except CredentialError as e:
                logger.error(f"Refresh token rotation failed permanently: {e}")
                self._notify("refresh_token_rotation_failed", f"Failed to rotate refresh token: {e}")
                return None
            except AgentError as e:
                logger.error(f"Refresh token rotation failed: {e}. Retrying in {format_interval(self.rotation_retry_sec)}.")
                self._notify("refresh_token_rotation_failed", f"Failed to rotate refresh token: {e}")
                self._schedule_rotation_retry()
                return None

            if new_pair.refresh_token == pair.refresh_token:
                logger.warning("Server did not issue a new refresh token during rotation. "
                               f"Retrying in {format_interval(self.rotation_retry_sec)}.")
                self._store(new_pair, schedule_rotation=False)
                self._schedule_rotation_retry()
                self._notify("refresh_token_rotation_failed", "Server did not rotate the refresh token")
                return new_pair

            self._store(new_pair, schedule_rotation=True)
            self.last_refresh_at = utc_now()
            self._notify("refresh_token_rotated", "Refresh token rotated successfully (30-day cycle)")
            return new_pair

    def _request_new_pair(self, pair: CredentialPair) -> CredentialPair:
        if self.network_client is None:
            raise RuntimeError("CredentialManager has no network client attached.")

        try:
            response = self.network_client.request(
                Endpoint.TOKEN_REFRESH,
                {"refresh_token": pair.refresh_token, "agent_id": pair.agent_id}
            )
        except HttpError as e:
            if e.status in INVALID_REFRESH_STATUSES or INVALID_REFRESH_MARKER in e.body.lower():
                self.clear(f"Refresh token rejected by server (HTTP {e.status})", notify_listeners=True)
                raise CredentialError(CredentialErrorKind.REFRESH_TOKEN_EXPIRED,
                                      "The refresh token is invalid. Please re-enroll the agent.") from e
            raise

        return self.build_pair(response, previous=pair)

    def build_pair(self, response: Dict[str, Any], previous: Optional[CredentialPair] = None) -> CredentialPair:
        """
        Builds a pair from an enrollment or refresh response.

        Accepts ``access_token`` or ``api_token``. A missing refresh token or
        agent id falls back to ``previous``. When the refresh token is reused,
        its creation time and expiry carry over.

        :param response: Parsed server response
        :param previous: Pair being refreshed, None for enrollment
        :rtype: CredentialPair
        :raises CredentialError: INVALID_RESPONSE when required fields are missing
        """
        access_token = response.get("access_token") or response.get("api_token")
        refresh_token = response.get("refresh_token") or (previous.refresh_token if previous else None)
        agent_id = response.get("agent_id") or (previous.agent_id if previous else None)
        if not access_token or not refresh_token or not agent_id:
            logger.error(f"Token response missing required fields. Keys: {sorted(response.keys())}")
            raise CredentialError(CredentialErrorKind.INVALID_RESPONSE, "Token response missing required fields")

        validate_token_format(str(access_token), "access token")
        validate_token_format(str(refresh_token), "refresh token")

        now = utc_now()
        access_expires_at = parse_iso8601(response.get("expires_at")) or now + self.default_access_ttl
        server_refresh_expiry = parse_iso8601(response.get("refresh_expires_at"))

        if previous is not None and refresh_token == previous.refresh_token:
            refresh_created_at = previous.refresh_token_created_at
            refresh_expires_at = server_refresh_expiry or previous.refresh_expires_at
        else:
            refresh_created_at = now
            refresh_expires_at = server_refresh_expiry or now + self.default_refresh_ttl

        return CredentialPair(
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            agent_id=str(agent_id),
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
            issued_at=now,
            refresh_token_created_at=refresh_created_at,
        )

    # === TIMERS ===

    def _schedule_timers(self, pair: CredentialPair, generation: int, schedule_rotation: bool) -> None:
        """Cancels existing timers and schedules new ones. Caller holds the state lock."""
        self._cancel_timers()
        now = utc_now()

        refresh_delay = (pair.access_expires_at - self.refresh_buffer - now).total_seconds()
        self._refresh_timer = self._start_timer("access refresh", refresh_delay, self._on_refresh_timer, generation)

        if schedule_rotation:
            rotation_delay = (pair.rotation_due_at(self.rotation_age) - now).total_seconds()
            self._rotation_timer = self._start_timer("refresh token rotation", rotation_delay, self._on_rotation_timer, generation)

    def _schedule_rotation_retry(self) -> None:
        with self._state_lock:
            if self._rotation_timer:
                self._rotation_timer.cancel()
            self._rotation_timer = self._start_timer("rotation retry", self.rotation_retry_sec,
                                                     self._on_rotation_timer, self._generation)

    def _start_timer(self, label: str, delay: float, callback: Callable[[int], None], generation: int) -> threading.Timer:
        if delay <= 0:
            logger.info(f"Credential {label} is overdue by {format_interval(-delay)}, executing immediately")
            delay = 0
        else:
            logger.info(f"Credential {label} scheduled in {format_interval(delay)}")
        timer = threading.Timer(delay, callback, args=(generation,))
        timer.daemon = True
        timer.name = f"Credential-{label.replace(' ', '-')}"
        timer.start()
        return timer

    def _cancel_timers(self) -> None:
        for timer in (self._refresh_timer, self._rotation_timer):
            if timer is not None:
                timer.cancel()
        self._refresh_timer = None
        self._rotation_timer = None

    def _is_current_generation(self, generation: int) -> bool:
        with self._state_lock:
            return generation == self._generation

    def _on_refresh_timer(self, generation: int) -> None:
        if not self._is_current_generation(generation):
            return
        pair = self.current()
        if pair is None:
            return
        try:
            self.refresh_access_token(stale_access_token=pair.access_token)
        except AgentError as e:
            logger.warning(f"Scheduled token refresh did not complete: {e}")

    def _on_rotation_timer(self, generation: int) -> None:
        if not self._is_current_generation(generation):
            return
        self.rotate_refresh_token()

    def _notify(self, event: str, message: str) -> None:
        if self.notifications is not None:
            self.notifications.add(event, message)
