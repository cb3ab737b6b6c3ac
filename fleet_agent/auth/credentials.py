"""
Credential pair held by the agent after enrollment.
"""
import datetime
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from ..utils import get_logger, parse_iso8601, format_iso8601, utc_now, mask_secret

logger = get_logger(__name__)

DEFAULT_REFRESH_BUFFER = datetime.timedelta(minutes=5)
DEFAULT_ROTATION_AGE = datetime.timedelta(days=29)

_UUID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_TIMESTAMP_FIELDS = ("access_expires_at", "refresh_expires_at", "issued_at", "refresh_token_created_at")


@dataclass(frozen=True)
class CredentialPair:
    """
    Access/refresh token pair. Instances are immutable; every refresh or
    rotation produces a new pair.
    """
    access_token: str
    refresh_token: str
    agent_id: str
    access_expires_at: datetime.datetime
    refresh_expires_at: datetime.datetime
    issued_at: datetime.datetime
    refresh_token_created_at: datetime.datetime

    def needs_access_refresh(self, now: Optional[datetime.datetime] = None,
                             buffer: datetime.timedelta = DEFAULT_REFRESH_BUFFER) -> bool:
        now = now or utc_now()
        return now >= self.access_expires_at - buffer

    def needs_rotation(self, now: Optional[datetime.datetime] = None,
                       rotation_age: datetime.timedelta = DEFAULT_ROTATION_AGE) -> bool:
        now = now or utc_now()
        return now >= self.rotation_due_at(rotation_age)

    def rotation_due_at(self, rotation_age: datetime.timedelta = DEFAULT_ROTATION_AGE) -> datetime.datetime:
        return self.refresh_token_created_at + rotation_age

    def is_refresh_expired(self, now: Optional[datetime.datetime] = None) -> bool:
        now = now or utc_now()
        return now >= self.refresh_expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in _TIMESTAMP_FIELDS:
            data[key] = format_iso8601(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CredentialPair':
        """
        :raises ValueError: If a field is missing or a timestamp cannot be parsed
        """
        for key in ("access_token", "refresh_token", "agent_id"):
            if not data.get(key):
                raise ValueError(f"Credential field '{key}' is missing")
        timestamps = {}
        for key in _TIMESTAMP_FIELDS:
            parsed = parse_iso8601(data.get(key))
            if parsed is None:
                raise ValueError(f"Credential timestamp '{key}' is missing or invalid")
            timestamps[key] = parsed
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
            agent_id=str(data["agent_id"]),
            **timestamps
        )

    def __repr__(self) -> str:
        return (f"CredentialPair(agent_id={self.agent_id!r}, access_token={mask_secret(self.access_token)!r}, "
                f"access_expires_at={format_iso8601(self.access_expires_at)}, "
                f"refresh_expires_at={format_iso8601(self.refresh_expires_at)})")


def looks_like_token(token: str) -> bool:
    """True for JWT-shaped (dotted) or UUID tokens."""
    return "." in token or bool(_UUID_PATTERN.match(token))


def validate_token_format(token: str, label: str = "token") -> bool:
    """
    Logs a warning when a token is neither a JWT nor a UUID. Never rejects.

    :rtype: bool
    """
    if looks_like_token(token):
        return True
    logger.warning(f"Unexpected {label} format ({mask_secret(token)}, length {len(token)})")
    return False
