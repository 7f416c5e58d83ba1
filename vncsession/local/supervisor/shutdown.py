import os
import logging
import threading
import subprocess
from typing import TYPE_CHECKING

from vncsession.local.errors import SessionCancelled
from vncsession.local.session import SHUTDOWN_ORDER, Role
from vncsession.local.supervisor import persistence, process_utils

if TYPE_CHECKING:
    from .supervisor import SessionSupervisor

log = logging.getLogger(__name__)

_STOP_COMMANDS = {
    Role.GUEST_SESSION: "GUEST_SESSION_STOP_COMMAND",
    Role.GUEST_RUNTIME: "GUEST_RUNTIME_STOP_COMMAND",
}


def _run_stop_command(manager: "SessionSupervisor", role: Role) -> None:
    """Asks the guest tooling to stop a guest component cleanly."""
    command = manager.config.command(_STOP_COMMANDS[role])
    if not command or manager.guest_env is None:
        return
    try:
        status = process_utils.run_command(
            f"{role.value}_stop", command, manager.display_identity, manager.guest_env,
            manager.config.STOP_COMMAND_TIMEOUT, threading.Event(),
            grace_period=manager.config.GRACEFUL_SHUTDOWN_TIMEOUT
        )
        if status != 0:
            log.warning(f"Stop command for {role.value} exited with status {status}.")
    except (OSError, subprocess.TimeoutExpired, SessionCancelled) as e:
        log.error(f"Stop command for {role.value} failed: {e}")


def stop_session(manager: "SessionSupervisor") -> None:
    """
    Stops every component in reverse startup order: guest session, guest runtime,
    display server, compositor, then auxiliary processes. Each process tree gets
    GRACEFUL_SHUTDOWN_TIMEOUT seconds after SIGTERM before it is killed.

    :param manager: The SessionSupervisor instance.
    """
    session = manager.session
    timeout = manager.config.GRACEFUL_SHUTDOWN_TIMEOUT
    log.info("Initiating graceful shutdown of the session...")

    for role in SHUTDOWN_ORDER:
        if role in _STOP_COMMANDS and role in session.confirmed_roles:
            _run_stop_command(manager, role)
        proc = session.unregister(role)
        if proc is not None:
            process_utils.stop_managed_process(proc, timeout)

    for name, pid in list(session.aux_pids.items()):
        if process_utils.pid_exists(pid):
            log.info(f"Stopping {name} (PID {pid})...")
            process_utils.terminate_tree(pid, timeout)
        session.aux_pids.pop(name, None)

    cleanup_shutdown_files(manager)
    log.info("Session stop sequence completed.")


def cleanup_shutdown_files(manager: "SessionSupervisor") -> None:
    """Removes the bridge link and the PID file, unless the PID file belongs to another supervisor."""
    link = manager.session.bridge_link
    if link is not None and link.is_symlink():
        try:
            link.unlink()
            log.debug(f"Removed bridge link {link}.")
        except OSError as e:
            log.warning(f"Could not remove bridge link {link}: {e}")

    pid_file = manager.config.pid_file_path
    owner = (persistence.get_pid_info(pid_file) or {}).get(persistence.SUPERVISOR_KEY)
    if owner not in (None, os.getpid()):
        log.debug(f"PID file {pid_file} belongs to supervisor PID {owner}; leaving it.")
        return
    persistence.remove_pid_file(pid_file)
