import logging
from typing import TYPE_CHECKING, Dict, List

from vncsession.local.errors import ConfigError
from .process_utils import resolve_executable
from .startup import display_server_command

if TYPE_CHECKING:
    from vncsession.local.config import SessionConfig

log = logging.getLogger(__name__)


def required_binaries(config: "SessionConfig") -> Dict[str, List[str]]:
    """The commands a session runs, keyed by a readable name."""
    commands = {
        "Compositor": config.command("COMPOSITOR_COMMAND"),
        "Display server": display_server_command(config),
        "Guest initializer": config.command("GUEST_INIT_COMMAND"),
        "Guest runtime": config.command("GUEST_RUNTIME_COMMAND"),
        "Guest session": config.command("GUEST_SESSION_COMMAND"),
    }
    if config.START_DBUS_SESSION:
        commands["Session bus"] = config.command("DBUS_LAUNCH_COMMAND")
    return commands


def check_configuration(config: "SessionConfig") -> bool:
    """
    Validates the settings and that every external binary resolves on PATH.

    :param config: The loaded configuration.
    :return: True if the configuration is usable, otherwise False.
    """
    log.info("Performing configuration and path validation...")
    try:
        config.validate()
    except ConfigError:
        return False

    all_ok = True
    for name, command in required_binaries(config).items():
        path_exe = resolve_executable(command)
        if path_exe is None:
            executable = command[0] if command else ''
            log.error(f"CONFIG CHECK FAILED: {name} '{executable}' not found on PATH")
            all_ok = False
        else:
            log.info(f"Config Check OK: Found {name} at '{path_exe}'")
    return all_ok
