"""
Main entry point for the Fleet Agent.
This script handles command-line arguments for enrollment, running the
agent, status output and reset.
"""
import argparse
import os
import sys
from typing import Optional, List

from .config import ConfigManager
from .core import Agent
from .utils.logger import setup_logger, get_logger, ROOT_LOGGER_NAME
from .version import __version_full__

AGENT_CONFIG_FILENAME = "agent_config.json"
DEFAULT_CONFIG_PATH = os.path.join(os.path.expanduser("~"), ".fleetagent", AGENT_CONFIG_FILENAME)
CONFIG_PATH_ENV = "FLEET_AGENT_CONFIG"

logger = get_logger("fleet_agent.main")


def _resolve_config_path(cli_path: Optional[str]) -> str:
    """CLI argument first, then the environment, then the per-user default."""
    return cli_path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH


def _load_config(args: argparse.Namespace) -> ConfigManager:
    config_path = _resolve_config_path(args.config)
    try:
        return ConfigManager(config_path)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Could not load configuration from {config_path}: {e}", file=sys.stderr)
        sys.exit(1)


def _configure_logging(config: ConfigManager, verbose: bool = False) -> None:
    """Applies the ``log.*`` settings to the package logger."""
    setup_logger(
        name=ROOT_LOGGER_NAME,
        console_level_name='DEBUG' if verbose else config.get('log.console_level', 'INFO'),
        file_level_name=config.get('log.file_level', 'DEBUG'),
        log_file_path=config.get('log.file_path'),
        reconfigure=True
    )


def _run_enroll_command(args: argparse.Namespace) -> int:
    """Handles the 'enroll' CLI command."""
    config = _load_config(args)
    _configure_logging(config, args.verbose)
    agent = Agent(config)
    try:
        if agent.enroll(args.token):
            print("Agent enrolled successfully.")
            print(agent.get_status_summary())
            return 0
        print(f"ERROR: Enrollment failed: {agent.last_error or 'unknown error'}", file=sys.stderr)
        return 1
    finally:
        agent.shutdown()


def _run_agent_command(args: argparse.Namespace) -> int:
    """Handles the 'run' CLI command."""
    config = _load_config(args)
    _configure_logging(config, args.verbose)
    logger.info(f"Starting {__version_full__}")
    agent = Agent(config)
    agent.run_forever()
    return 0


def _run_status_command(args: argparse.Namespace) -> int:
    """Handles the 'status' CLI command."""
    config = _load_config(args)
    _configure_logging(config, args.verbose)
    agent = Agent(config)
    try:
        agent.load_saved_state()
        print(agent.get_status_summary())
        return 0
    finally:
        agent.shutdown()


def _run_reset_command(args: argparse.Namespace) -> int:
    """Handles the 'reset' CLI command."""
    config = _load_config(args)
    _configure_logging(config, args.verbose)
    agent = Agent(config)
    try:
        agent.reset("Reset requested from command line")
        print("Agent registration and credentials cleared.")
        return 0
    finally:
        agent.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleet-agent", description="Fleet management agent.")
    parser.add_argument('--version', action='version', version=__version_full__)
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--config', help=f"Path to {AGENT_CONFIG_FILENAME} (default: ${CONFIG_PATH_ENV} or {DEFAULT_CONFIG_PATH}).")
    common.add_argument('-v', '--verbose', action='store_true', help='Log debug output to the console.')

    enroll_parser = subparsers.add_parser('enroll', parents=[common], help='Enroll this device with the server.')
    enroll_parser.add_argument('--token', required=True, help='One-time enrollment token.')
    enroll_parser.set_defaults(func=_run_enroll_command)

    run_parser = subparsers.add_parser('run', parents=[common], help='Run the agent until interrupted.')
    run_parser.set_defaults(func=_run_agent_command)

    status_parser = subparsers.add_parser('status', parents=[common], help='Show the agent status.')
    status_parser.set_defaults(func=_run_status_command)

    reset_parser = subparsers.add_parser('reset', parents=[common], help='Clear registration and credentials.')
    reset_parser.set_defaults(func=_run_reset_command)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function to parse arguments and dispatch commands.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, 'func'):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
