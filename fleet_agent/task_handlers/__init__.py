"""
Task handler modules, one per task type.

This package provides:
    - BaseTaskHandler: Abstract base class for all handlers
    - CommandTaskHandler / ScriptTaskHandler: Shell commands and scripts
    - SoftwareTaskHandler: Package installation
    - PolicyTaskHandler: Host policy changes
    - DataCollectionTaskHandler / SystemCheckTaskHandler: Host facts and health
"""
from .base_handler import BaseTaskHandler
from .command_handler import CommandTaskHandler, ScriptTaskHandler, DEFAULT_BLOCKED_PATTERNS
from .software_handler import SoftwareTaskHandler
from .policy_handler import PolicyTaskHandler
from .data_handler import DataCollectionTaskHandler, SystemCheckTaskHandler

__all__ = [
    'BaseTaskHandler',
    'CommandTaskHandler',
    'ScriptTaskHandler',
    'SoftwareTaskHandler',
    'PolicyTaskHandler',
    'DataCollectionTaskHandler',
    'SystemCheckTaskHandler',
    'DEFAULT_BLOCKED_PATTERNS',
]
