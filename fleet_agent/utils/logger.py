"""
Logger setup module for the fleet agent.

All module loggers are children of the ``fleet_agent`` package logger, so
configuring that one logger (console level, rotating log file) from the CLI
applies to every component.
"""
import os
import sys
import logging
import logging.handlers
import tempfile
from typing import Optional, Dict, Tuple

ROOT_LOGGER_NAME = 'fleet_agent'
DEFAULT_CONSOLE_LEVEL_NAME = 'INFO'
DEFAULT_FILE_LEVEL_NAME = 'DEBUG'
DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

_loggers: Dict[str, logging.Logger] = {}


def _get_log_level(level_name: str, default_level: int = logging.INFO) -> int:
    """Maps a level name from the ``log`` config section to its constant, or ``default_level``."""
    level = logging.getLevelName(str(level_name).upper())
    if isinstance(level, int):
        return level
    logging.warning(f"Invalid log level name '{level_name}'. Using default level {logging.getLevelName(default_level)}.")
    return default_level


def _check_directory_writable(directory_path: str) -> Tuple[bool, str]:
    """
    Check if a directory exists (creating it if needed) and is writable.

    :param directory_path: Path to the directory to check
    :type directory_path: str
    :return: Tuple (is_writable, message)
    :rtype: Tuple[bool, str]
    """
    if not directory_path:
        return False, "Directory path is empty"

    try:
        os.makedirs(directory_path, exist_ok=True)
    except OSError as e:
        return False, f"Error creating directory {directory_path}: {e}"

    if not os.path.isdir(directory_path):
        return False, f"{directory_path} exists but is not a directory"

    test_file = os.path.join(directory_path, f".log_writetest_{os.getpid()}")
    try:
        with open(test_file, 'w') as f:
            f.write('test')
        os.remove(test_file)
        return True, f"Directory {directory_path} is writable"
    except OSError as e:
        return False, f"Cannot write to directory {directory_path}: {e}"


def _get_fallback_log_directory() -> str:
    """
    Get a fallback directory for logs, preferring the system temp directory.

    :return: Path to a fallback directory for logging
    :rtype: str
    """
    app_temp_dir = os.path.join(tempfile.gettempdir(), "FleetAgent", "logs")
    try:
        os.makedirs(app_temp_dir, exist_ok=True)
        return app_temp_dir
    except OSError:
        return os.path.join(os.getcwd(), "logs")


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    log_format: str = DEFAULT_LOG_FORMAT,
    console_level_name: str = DEFAULT_CONSOLE_LEVEL_NAME,
    file_level_name: str = DEFAULT_FILE_LEVEL_NAME,
    log_file_path: Optional[str] = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    reconfigure: bool = False
) -> logging.Logger:
    """
    Configures the console handler and optional rotating file handler of a logger.

    A logger that was already set up is returned untouched unless
    ``reconfigure`` is True. The CLI uses that to apply the ``log.*`` settings
    once the configuration file has been read.

    :param name: Logger name, normally the package logger
    :param console_level_name: Level name for stderr output
    :param file_level_name: Level name for the log file
    :param log_file_path: Log file; None disables file logging. An unwritable
        directory falls back to ``<tmp>/FleetAgent/logs``.
    :type log_file_path: Optional[str]
    :param max_bytes: Rotation size of the log file
    :param backup_count: Rotated files to keep
    :param reconfigure: Replace the handlers of an already configured logger
    :rtype: logging.Logger
    """
    if name in _loggers and not reconfigure:
        return _loggers[name]

    logger = logging.getLogger(name)
    console_level = _get_log_level(console_level_name, logging.INFO)
    file_level = _get_log_level(file_level_name, logging.DEBUG)
    logger.setLevel(min(console_level, file_level) if log_file_path else console_level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file_path:
        log_dir = os.path.dirname(log_file_path) or os.getcwd()
        is_writable, msg = _check_directory_writable(log_dir)
        if not is_writable:
            fallback_dir = _get_fallback_log_directory()
            log_file_path = os.path.join(fallback_dir, os.path.basename(log_file_path))
            logger.warning(f"Cannot use specified log directory: {msg}. Falling back to {log_file_path}")

        try:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setLevel(file_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            logger.info(f"File logging enabled to: {log_file_path}")
        except OSError as e:
            logger.error(f"Failed to set up file logging to {log_file_path}: {e}. Logging to console only.")

    _loggers[name] = logger
    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Get a logger instance by name.

    Names inside the ``fleet_agent`` namespace return plain child loggers that
    propagate to the package logger, which is set up with defaults on first
    use. Any other name gets its own configured logger.

    :param name: The name of the logger to retrieve
    :type name: str
    :return: The logger instance
    :rtype: logging.Logger
    """
    if name in _loggers:
        return _loggers[name]

    if name == ROOT_LOGGER_NAME or not name.startswith(ROOT_LOGGER_NAME + '.'):
        return setup_logger(name)

    if ROOT_LOGGER_NAME not in _loggers:
        setup_logger(ROOT_LOGGER_NAME)
    logger = logging.getLogger(name)
    _loggers[name] = logger
    return logger
