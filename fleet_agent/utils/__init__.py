"""
Utility functions for the fleet agent.
"""
from fleet_agent.utils.logger import get_logger, setup_logger
from fleet_agent.utils.utils import (
    save_json,
    load_json,
    utc_now,
    parse_iso8601,
    format_iso8601,
    format_interval,
    mask_secret,
)

__all__ = [
    'get_logger',
    'setup_logger',
    'save_json',
    'load_json',
    'utc_now',
    'parse_iso8601',
    'format_iso8601',
    'format_interval',
    'mask_secret',
]
