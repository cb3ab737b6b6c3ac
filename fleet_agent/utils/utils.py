"""
Utility functions for the fleet agent.
"""
import datetime
import os
import json
from typing import Any, Optional

from fleet_agent.utils.logger import get_logger

logger = get_logger(__name__)


def save_json(data: Any, file_path: str, mode: Optional[int] = None) -> bool:
    """
    Save data to a JSON file, replacing it atomically.

    :param data: Data to save
    :type data: Any
    :param file_path: Path to save the JSON file
    :type file_path: str
    :param mode: Optional permission bits for the file (e.g. 0o600). The temp file is
        created with them, and a missing parent directory is created owner-only.
    :type mode: Optional[int]
    :return: True if save succeeded, False otherwise
    :rtype: bool
    """
    if not file_path:
        logger.error("Cannot save JSON: File path is empty")
        return False

    temp_path = file_path + ".tmp"
    try:
        directory = os.path.dirname(file_path)
        if directory:
            os.makedirs(directory, mode=0o700 if mode is not None else 0o777, exist_ok=True)

        if mode is None:
            f = open(temp_path, 'w', encoding='utf-8')
        else:
            # A leftover temp file would keep its old permissions.
            if os.path.exists(temp_path):
                os.remove(temp_path)
            f = os.fdopen(os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode), 'w', encoding='utf-8')
        with f:
            json.dump(data, f, indent=2)
        os.replace(temp_path, file_path)
        logger.debug(f"Successfully saved JSON data to: {file_path}")
        return True
    except (IOError, OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write file {file_path}: {e}")
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError:
                pass
        return False


def load_json(file_path: str) -> Any:
    """
    Load data from a JSON file.

    :param file_path: Path to the JSON file
    :type file_path: str
    :return: Loaded data or empty dict on error
    :rtype: Any
    """
    if not file_path or not os.path.exists(file_path):
        logger.debug(f"JSON file does not exist: {file_path}")
        return {}

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        logger.debug(f"Successfully loaded JSON data from: {file_path}")
        return data
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON from {file_path}: {e}")
        return {}
    except (IOError, OSError) as e:
        logger.error(f"Failed to read file {file_path}: {e}")
        return {}


def utc_now() -> datetime.datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def parse_iso8601(value: Any) -> Optional[datetime.datetime]:
    """
    Parse an ISO-8601 timestamp (``Z`` suffix accepted) into an aware datetime.

    Naive timestamps are taken to be UTC. Epoch seconds are accepted as well.

    :param value: Timestamp string, number, or datetime
    :return: Aware datetime, or None when the value cannot be parsed
    :rtype: Optional[datetime.datetime]
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.datetime.fromtimestamp(value, tz=datetime.timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Could not parse ISO-8601 timestamp: {value!r}")
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def format_iso8601(value: Optional[datetime.datetime]) -> Optional[str]:
    """Render an aware datetime as ISO-8601 with a ``Z`` suffix."""
    if value is None:
        return None
    return value.astimezone(datetime.timezone.utc).isoformat().replace('+00:00', 'Z')


def format_interval(seconds: float) -> str:
    """
    Human readable rendering of a duration, e.g. ``2d 3h 4m``.

    :param seconds: Duration in seconds, may be negative for overdue events
    :type seconds: float
    :rtype: str
    """
    prefix = "-" if seconds < 0 else ""
    remaining = int(abs(seconds))
    days, remaining = divmod(remaining, 86400)
    hours, remaining = divmod(remaining, 3600)
    minutes, secs = divmod(remaining, 60)
    if days:
        return f"{prefix}{days}d {hours}h {minutes}m"
    if hours:
        return f"{prefix}{hours}h {minutes}m"
    if minutes:
        return f"{prefix}{minutes}m {secs}s"
    return f"{prefix}{secs}s"


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """
    Mask a token for logging, keeping only the last few characters.

    :param value: Secret to mask
    :param visible: Number of trailing characters to keep
    :rtype: str
    """
    if not value:
        return "<empty>"
    if len(value) <= visible:
        return "***"
    return f"***{value[-visible:]}"
