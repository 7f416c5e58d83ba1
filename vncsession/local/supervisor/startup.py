import logging
import threading
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Tuple

from vncsession.local.errors import LaunchError, ReadinessTimeoutError, SessionCancelled
from vncsession.local.identity import Identity
from vncsession.local.session import Endpoint, ManagedProcess, Role, Session
from vncsession.local.supervisor import persistence, process_utils, runtime_dir
from vncsession.local.supervisor.polling import PollCancelled, PollTimeout, ReadinessCheck, port_is_listening

if TYPE_CHECKING:
    from vncsession.local.config import SessionConfig

log = logging.getLogger(__name__)


def check_if_already_running(pid_file: Path) -> bool:
    """
    Checks if another supervisor is alive based on the PID file.

    :param pid_file: The PID file path.
    :return: True if already running, False otherwise.
    """
    stale = persistence.find_stale_processes(pid_file)
    if persistence.SUPERVISOR_KEY in stale:
        log.error(f"Another supervisor appears to be running (PID {stale[persistence.SUPERVISOR_KEY].pid}).")
        return True
    return False


def clean_stale_state(config: "SessionConfig", directories: List[Path]) -> None:
    """
    Removes what a previous failed attempt left behind, before anything new is spawned:
    processes recorded in the PID file, then endpoint sockets nobody listens on.

    :param config: The session configuration.
    :param directories: Runtime directories to clear of stale endpoints.
    """
    stale = persistence.find_stale_processes(config.pid_file_path)
    stale.pop(persistence.SUPERVISOR_KEY, None)
    if stale:
        log.warning(f"Stopping {len(stale)} processes left by a previous run: {', '.join(f'{n} (PID {p.pid})' for n, p in stale.items())}")
        for proc in stale.values():
            process_utils.terminate_tree(proc.pid, config.GRACEFUL_SHUTDOWN_TIMEOUT)
    persistence.remove_pid_file(config.pid_file_path)

    for directory in directories:
        runtime_dir.remove_stale_endpoints(directory, config.ENDPOINT_PATTERN)


def prepare_runtime_dirs(config: "SessionConfig", display_identity: Identity,
                         supervisor_identity: Identity) -> Tuple[Path, Path]:
    """
    Secures the runtime directories of the display identity and of the supervisor.

    :return: (display runtime dir, supervisor runtime dir).
    :raises SetupError: If either directory cannot be set up.
    """
    display_dir = runtime_dir.runtime_dir_for(display_identity, config.RUNTIME_DIR_ROOT)
    if config.SUPERVISOR_RUNTIME_DIR:
        supervisor_dir = Path(config.SUPERVISOR_RUNTIME_DIR)
    else:
        supervisor_dir = runtime_dir.runtime_dir_for(supervisor_identity, config.RUNTIME_DIR_ROOT)

    clean_stale_state(config, [display_dir, supervisor_dir])
    runtime_dir.ensure_runtime_dir(display_identity, display_dir)
    if supervisor_dir != display_dir:
        runtime_dir.ensure_runtime_dir(supervisor_identity, supervisor_dir)
    return display_dir, supervisor_dir


def _log_path(config: "SessionConfig", role: Role) -> Path:
    return Path(config.LOG_DIR) / f"{role.value}.log"


def start_dbus_session(config: "SessionConfig", identity: Identity, display_dir: Path,
                       session: Session) -> Dict[str, str]:
    """
    Launches a session bus for the display identity and returns its variables.

    The bus daemon's PID is recorded in `session.aux_pids` so it is stopped on shutdown.

    :return: The DBUS_SESSION_BUS_* variables for the children's environment.
    :raises LaunchError: If dbus-launch fails.
    """
    env = process_utils.build_child_env(identity, display_dir)
    try:
        result = subprocess.run(
            config.command("DBUS_LAUNCH_COMMAND"), env=env, capture_output=True, text=True,
            timeout=config.STOP_COMMAND_TIMEOUT, check=True,
            **process_utils.identity_popen_kwargs(identity)
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise LaunchError(f"Cannot start a session bus: {e}") from e

    variables: Dict[str, str] = {}
    for line in result.stdout.splitlines():
        name, sep, value = line.partition("=")
        if not sep or not name.startswith("DBUS_SESSION_BUS_"):
            continue
        variables[name.strip()] = value.strip().rstrip(";").strip("'\"")
    if "DBUS_SESSION_BUS_ADDRESS" not in variables:
        raise LaunchError(f"dbus-launch printed no bus address: {result.stdout!r}")
    if variables.get("DBUS_SESSION_BUS_PID", "").isdigit():
        session.aux_pids["dbus"] = int(variables["DBUS_SESSION_BUS_PID"])
    log.info(f"Started session bus: {variables['DBUS_SESSION_BUS_ADDRESS']}")
    return {"DBUS_SESSION_BUS_ADDRESS": variables["DBUS_SESSION_BUS_ADDRESS"]}


#* --- Compositor ---
def compositor_env(config: "SessionConfig", identity: Identity, display_dir: Path,
                   extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Synthesizes the compositor environment: headless backend plus rendering variables.
    WAYLAND_DISPLAY is left unset so the compositor picks a free endpoint name.
    """
    env = process_utils.build_child_env(identity, display_dir, extra)
    env.update(config.COMPOSITOR_BASE_ENV)
    vendor = config.rendering_vendor
    if vendor is None:
        env.update(config.SOFTWARE_RENDERING_ENV)
        log.info("Using software rendering")
    else:
        env.update(config.HARDWARE_VENDOR_ENV[vendor])
        log.info(f"Using {vendor} GPU drivers")
    env.pop("WAYLAND_DISPLAY", None)
    return env


def launch_compositor(config: "SessionConfig", identity: Identity, display_dir: Path,
                      extra_env: Optional[Mapping[str, str]] = None) -> ManagedProcess:
    """Spawns the headless compositor. Returns immediately after spawn."""
    return process_utils.launch_process(
        Role.COMPOSITOR, config.command("COMPOSITOR_COMMAND"), identity,
        compositor_env(config, identity, display_dir, extra_env), _log_path(config, Role.COMPOSITOR)
    )


#* --- Remote Display ---
def display_server_command(config: "SessionConfig") -> List[str]:
    if config.DISPLAY_SERVER_CONFIG:
        return config.command("DISPLAY_SERVER_CONFIG_COMMAND", config=config.DISPLAY_SERVER_CONFIG)
    return config.command("DISPLAY_SERVER_COMMAND", address=config.DISPLAY_BIND_ADDRESS, port=config.DISPLAY_BIND_PORT)


def launch_display_server(config: "SessionConfig", identity: Identity, display_dir: Path,
                          endpoint: Endpoint, extra_env: Optional[Mapping[str, str]] = None) -> ManagedProcess:
    """
    Spawns the remote-display server attached to the discovered endpoint.

    It runs as the same identity as the compositor, so it uses the original endpoint
    name, not the bridged link.
    """
    env = process_utils.build_child_env(identity, display_dir, extra_env)
    env["WAYLAND_DISPLAY"] = endpoint.name
    return process_utils.launch_process(
        Role.DISPLAY_SERVER, display_server_command(config), identity, env,
        _log_path(config, Role.DISPLAY_SERVER)
    )


def wait_for_display_server(config: "SessionConfig", session: Session, cancel_event: threading.Event) -> None:
    """
    Waits for the remote-display server to accept TCP connections.

    :raises ReadinessTimeoutError: With the three diagnostic booleans, if the port never opens.
    :raises SessionCancelled: If a shutdown is requested.
    """
    host, port = config.probe_address, config.DISPLAY_BIND_PORT
    log.info(f"Verifying the display server is listening on {host}:{port}...")
    check = ReadinessCheck(
        "display server port",
        lambda: port_is_listening(host, port, config.PROBE_CONNECT_TIMEOUT),
        config.READINESS_INTERVAL, config.READINESS_MAX_ATTEMPTS,
    )
    try:
        check.run(cancel_event)
    except PollCancelled as e:
        raise SessionCancelled("Shutdown requested while waiting for the display server.") from e
    except PollTimeout as e:
        compositor_alive = session.is_alive(Role.COMPOSITOR)
        endpoint_exists = session.endpoint is not None and session.endpoint.exists()
        display_server_alive = session.is_alive(Role.DISPLAY_SERVER)
        log.error(f"Display server is not listening on port {port} after {config.READINESS_MAX_ATTEMPTS} attempts.")
        log.error(f"  WAYLAND_DISPLAY={session.endpoint.name if session.endpoint else None}")
        log.error(f"  Endpoint exists: {'yes' if endpoint_exists else 'no'}")
        log.error(f"  Compositor running: {'yes' if compositor_alive else 'no'}")
        log.error(f"  Display server running: {'yes' if display_server_alive else 'no'}")
        raise ReadinessTimeoutError(
            f"Display server did not bind {host}:{port}.",
            compositor_alive=compositor_alive,
            endpoint_exists=endpoint_exists,
            display_server_alive=display_server_alive,
        ) from e
    log.info(f"Port {port} is listening")


#* --- Guest Environment ---
def guest_env(identity: Identity, display_dir: Path, endpoint: Endpoint,
              extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = process_utils.build_child_env(identity, display_dir, extra)
    env["WAYLAND_DISPLAY"] = endpoint.name
    return env


def guest_init_command(config: "SessionConfig") -> List[str]:
    """The initialization command; the full-install flag adds the larger payload."""
    command = config.command("GUEST_INIT_COMMAND")
    if config.FULL_INSTALL:
        command += config.command("GUEST_INIT_FULL_ARGS")
    return command


def start_guest_runtime(config: "SessionConfig", identity: Identity, env: Mapping[str, str],
                        cancel_event: threading.Event) -> None:
    """
    Starts the guest runtime container and waits for the start command to succeed.

    :raises LaunchError: If the command fails, times out or cannot be run.
    """
    log.info("Starting guest runtime...")
    try:
        status = process_utils.run_command(
            Role.GUEST_RUNTIME.value, config.command("GUEST_RUNTIME_COMMAND"), identity, env,
            config.GUEST_RUNTIME_TIMEOUT, cancel_event, grace_period=config.GRACEFUL_SHUTDOWN_TIMEOUT
        )
    except subprocess.TimeoutExpired as e:
        raise LaunchError(f"Guest runtime start did not finish within {config.GUEST_RUNTIME_TIMEOUT}s.") from e
    except OSError as e:
        raise LaunchError(f"Cannot start guest runtime: {e}") from e
    if status != 0:
        raise LaunchError(f"Guest runtime start failed with exit status {status}.", {"exit_status": status})
    log.info("Guest runtime started")


def start_guest_session(config: "SessionConfig", identity: Identity, env: Mapping[str, str]) -> ManagedProcess:
    """
    Launches the interactive guest session in the background.

    Only the launch is verified; the session may take arbitrarily long to become usable.

    :raises LaunchError: If the process cannot be spawned or exits with an error at once.
    """
    proc = process_utils.launch_process(
        Role.GUEST_SESSION, config.command("GUEST_SESSION_COMMAND"), identity, env,
        _log_path(config, Role.GUEST_SESSION)
    )
    if not proc.is_alive() and proc.returncode != 0:
        process_utils.log_tail(proc, config.LOG_TAIL_LINES)
        raise LaunchError(f"Guest session exited immediately with status {proc.returncode}.")
    return proc
