import logging
from typing import List

from vncsession.local.config import SessionConfig
from vncsession.local.errors import EXIT_CONFIG_ERROR, EXIT_OK
from vncsession.local.supervisor.config_utils import check_configuration
from vncsession.local.console.handler import display_status, print_help, run_session, stop_supervisor, toggle_verbose_logging

log = logging.getLogger(__name__)


def execute_command(command: str, args: List[str], config: SessionConfig) -> int:
    """
    Executes a single command from the command line.

    :param command: The main command string (e.g., 'run', 'status').
    :param args: A list of arguments for the command.
    :param config: The loaded configuration.
    :return int: The process exit code.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    if "--verbose" in args:
        toggle_verbose_logging(True)
        args = [arg for arg in args if arg != "--verbose"]

    command_map = {
        "run": lambda: run_session(config),
        "status": lambda: display_status(config),
        "stop": lambda: stop_supervisor(config),
        "check-config": lambda: EXIT_OK if check_configuration(config) else EXIT_CONFIG_ERROR,
        "help": print_help,
    }

    if command in command_map:
        return command_map[command]()

    log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    print_help()
    return EXIT_CONFIG_ERROR
