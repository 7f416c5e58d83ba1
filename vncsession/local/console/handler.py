import time
import psutil
import logging
import setproctitle

from vncsession.local.config import SessionConfig
from vncsession.local.errors import EXIT_CONFIG_ERROR, EXIT_INTERNAL_ERROR, EXIT_OK, ConfigError
from vncsession.local.supervisor import SessionSupervisor, persistence
from vncsession.local.supervisor.polling import port_is_listening

log = logging.getLogger(__name__)


def run_session(config: SessionConfig) -> int:
    """
    Runs one supervised session in the foreground and returns its exit code.

    :param config: The loaded configuration; validated here before anything is spawned.
    """
    try:
        config.validate()
    except ConfigError as e:
        log.critical(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    setproctitle.setproctitle(config.SUPERVISOR_PROCESS_TITLE)
    supervisor = SessionSupervisor(config)
    supervisor.install_signal_handlers()
    return supervisor.run()

def display_status(config: SessionConfig) -> int:
    """Checks and displays the recorded session processes, including resource usage."""
    pids = persistence.get_pid_info(config.pid_file_path)
    if not pids:
        print("\nSession is STOPPED (No PID file found).\n")
        return EXIT_INTERNAL_ERROR

    print("\n--- Session Status ---")
    all_stale = True
    total_cpu = 0.0
    total_mem = 0
    started_at = None

    for name, pid in sorted(pids.items()):
        try:
            p = psutil.Process(pid)
            cpu = p.cpu_percent(interval=0.1)
            mem = p.memory_info().rss
            label = f"{p.name()} ({name})"
            print(f"  - {label:<32} : PID {pid:<8} | Status: {p.status().upper()} | CPU: {cpu:.1f}% | MEM: {mem/1024/1024:.1f} MB")
            total_cpu += cpu
            total_mem += mem
            all_stale = False
            if name == persistence.SUPERVISOR_KEY:
                started_at = p.create_time()
        except psutil.NoSuchProcess:
            print(f"  - {name:<32} : PID {pid:<8} | Status: STOPPED (Stale PID)")
        except psutil.AccessDenied:
            print(f"  - {name:<32} : PID {pid:<8} | Status: RUNNING (Access Denied)")
            all_stale = False

    print(f"\nTOTAL CPU: {total_cpu:.1f}%  |  TOTAL MEMORY: {total_mem/1024/1024:.1f} MB")
    if started_at:
        print(f"Runtime: {time.strftime('%H:%M:%S', time.gmtime(time.time() - started_at))}")
    listening = port_is_listening(config.probe_address, config.DISPLAY_BIND_PORT, config.PROBE_CONNECT_TIMEOUT)
    print(f"Display port {config.DISPLAY_BIND_PORT}: {'LISTENING' if listening else 'CLOSED'}")
    print(f"Initialization marker {config.INIT_MARKER_PATH}: {'present' if config.INIT_MARKER_PATH.exists() else 'absent'}")

    if all_stale:
        print("\nWARNING: All processes are stopped but a stale PID file exists.")
        print("The next 'run' cleans it up before starting.")
    print("-" * 22 + "\n")
    return EXIT_INTERNAL_ERROR if all_stale else EXIT_OK

def stop_supervisor(config: SessionConfig) -> int:
    """
    Sends SIGTERM to the recorded supervisor and waits for it to stop its session.

    :return: 0 if the supervisor is gone (or was not running), 1 if it outlived STOP_WAIT_TIMEOUT.
    """
    pids = persistence.get_pid_info(config.pid_file_path) or {}
    pid = pids.get(persistence.SUPERVISOR_KEY)
    if pid is None or not psutil.pid_exists(pid):
        print("Session supervisor is not running.")
        return EXIT_OK

    try:
        proc = psutil.Process(pid)
        log.info(f"Sending SIGTERM to supervisor (PID {pid})...")
        proc.terminate()
        proc.wait(timeout=config.STOP_WAIT_TIMEOUT)
    except psutil.NoSuchProcess:
        pass
    except psutil.AccessDenied:
        log.error(f"Not allowed to signal supervisor PID {pid}. Run as root.")
        return EXIT_INTERNAL_ERROR
    except psutil.TimeoutExpired:
        log.error(f"Supervisor (PID {pid}) did not exit within {config.STOP_WAIT_TIMEOUT}s.")
        return EXIT_INTERNAL_ERROR
    print("Session stopped.")
    return EXIT_OK

def toggle_verbose_logging(enabled: bool) -> None:
    """Sets the console handler to DEBUG (enabled) or INFO."""
    new_level = logging.DEBUG if enabled else logging.INFO
    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setLevel(new_level)
            break
    log.debug("Verbose console logging is ON.")

def print_help() -> int:
    """Prints the main help text."""
    print("\nUsage: vncsession <command> [options]")
    print("\nAvailable commands:")
    print("  run [--verbose]        - Run one session in the foreground until it fails or is stopped.")
    print("  status                 - Show the recorded session processes, display port and marker.")
    print("  stop                   - Ask the running supervisor to stop its session.")
    print("  check-config           - Validate settings and paths to external binaries.")
    print("  help                   - Show this help message.")
    print()
    return EXIT_OK
