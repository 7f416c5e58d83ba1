import os
import time
import signal
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from vncsession.local.config import SessionConfig
from vncsession.local.errors import (
    EXIT_INTERNAL_ERROR, EXIT_OK, CompositorDiedError, LaunchError, SessionCancelled, SessionError, SetupError,
)
from vncsession.local.identity import Identity, current_identity, resolve_identity
from vncsession.local.session import Role, Session, SessionState
from vncsession.local.supervisor import (
    bridge, discovery, initializer, persistence, process_utils, runtime_dir, shutdown, startup,
)
from vncsession.local.supervisor.monitor import HealthMonitor

log = logging.getLogger(__name__)


class SessionSupervisor:
    """
    Brings up the compositor, the remote-display server and the guest environment in
    order, watches them, and tears everything down again.

    Each instance runs exactly one Session. A failed session is never resumed: the
    supervisor exits with the failure's code and the outer process manager starts a
    fresh one.
    """

    def __init__(self, config: SessionConfig) -> None:
        """Initializes the supervisor state. The config must already be validated."""
        self.config = config
        self.session = Session()
        self.shutdown_signal_received = threading.Event()

        self.supervisor_identity: Identity = current_identity()
        self.display_identity: Optional[Identity] = None
        self.display_dir: Optional[Path] = None
        self.supervisor_dir: Optional[Path] = None
        self.extra_env: Dict[str, str] = {}
        self.guest_env: Optional[Dict[str, str]] = None
        self._preexisting: List[Path] = []

    #* --- Signals ---
    def request_shutdown(self, signum: Optional[int] = None, frame=None) -> None:
        """Sets the shutdown event; every wait of the supervisor returns promptly."""
        if signum is not None:
            log.info(f"Received {signal.Signals(signum).name}, shutting down.")
        self.shutdown_signal_received.set()

    def install_signal_handlers(self) -> None:
        """Routes SIGTERM, SIGINT and SIGHUP to `request_shutdown`. Main thread only."""
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            signal.signal(sig, self.request_shutdown)

    #* --- Pipeline ---
    def _check_cancelled(self, stage: str) -> None:
        if self.shutdown_signal_received.is_set():
            raise SessionCancelled(f"Shutdown requested before {stage}.")

    def _setup_runtime(self) -> None:
        if startup.check_if_already_running(self.config.pid_file_path):
            raise SetupError("Another supervisor instance is already running.")
        self.display_identity = resolve_identity(self.config.DISPLAY_USER)
        log.info(f"Display user: {self.display_identity.name} (UID: {self.display_identity.uid})")
        self.display_dir, self.supervisor_dir = startup.prepare_runtime_dirs(
            self.config, self.display_identity, self.supervisor_identity
        )

        if os.environ.get("DBUS_SESSION_BUS_ADDRESS"):
            self.extra_env["DBUS_SESSION_BUS_ADDRESS"] = os.environ["DBUS_SESSION_BUS_ADDRESS"]
        elif self.config.START_DBUS_SESSION:
            self.extra_env.update(startup.start_dbus_session(
                self.config, self.display_identity, self.display_dir, self.session
            ))

    def _launch_compositor(self) -> None:
        self._check_cancelled("launching the compositor")
        self.session.transition(SessionState.LAUNCHING_COMPOSITOR)
        self._preexisting = runtime_dir.list_endpoints(self.display_dir, self.config.ENDPOINT_PATTERN)
        compositor = startup.launch_compositor(self.config, self.display_identity, self.display_dir, self.extra_env)
        self.session.register(compositor)
        persistence.write_pid_file(self)

    def _discover_and_bridge(self) -> None:
        self.session.transition(SessionState.WAITING_FOR_ENDPOINT)
        compositor = self.session.get(Role.COMPOSITOR)
        endpoint = discovery.discover_endpoint(
            compositor, self.display_dir, self.config.ENDPOINT_PATTERN, self.display_identity,
            self.config.DISCOVERY_INTERVAL, self.config.DISCOVERY_MAX_ATTEMPTS,
            self.shutdown_signal_received, preexisting=self._preexisting,
        )
        self.session.endpoint = endpoint
        if not compositor.is_alive():
            raise CompositorDiedError(
                f"Compositor exited with status {compositor.returncode} right after creating {endpoint.name}.",
                {"compositor_alive": False, "endpoint_exists": endpoint.exists()},
            )
        self.session.confirm_alive(Role.COMPOSITOR)
        self.session.bridge_link = bridge.bridge_endpoint(
            endpoint, self.supervisor_dir, self.config.BRIDGE_RETRY_DELAY, self.shutdown_signal_received
        )

    def _launch_display_server(self) -> None:
        self._check_cancelled("launching the display server")
        self.session.transition(SessionState.LAUNCHING_DISPLAY_SERVER)
        display_server = startup.launch_display_server(
            self.config, self.display_identity, self.display_dir, self.session.endpoint, self.extra_env
        )
        self.session.register(display_server)
        persistence.write_pid_file(self)

        self.session.transition(SessionState.WAITING_FOR_READINESS)
        startup.wait_for_display_server(self.config, self.session, self.shutdown_signal_received)
        if not display_server.is_alive():
            raise LaunchError(
                f"Port {self.config.DISPLAY_BIND_PORT} is listening but the display server "
                f"(PID {display_server.pid}) exited with status {display_server.returncode}.",
                {"display_server_alive": False},
            )
        self.session.confirm_alive(Role.DISPLAY_SERVER)

    def _start_guest(self) -> None:
        self._check_cancelled("initializing the guest environment")
        self.session.transition(SessionState.INITIALIZING)
        self.guest_env = startup.guest_env(self.display_identity, self.display_dir, self.session.endpoint, self.extra_env)

        initializer.initialize_environment(
            initializer.InitializationMarker(self.config.INIT_MARKER_PATH),
            startup.guest_init_command(self.config), self.display_identity, self.guest_env,
            self.config.INIT_TIMEOUT, self.shutdown_signal_received,
            grace_period=self.config.GRACEFUL_SHUTDOWN_TIMEOUT,
        )

        self._check_cancelled("starting the guest runtime")
        startup.start_guest_runtime(self.config, self.display_identity, self.guest_env, self.shutdown_signal_received)
        self.session.confirm_alive(Role.GUEST_RUNTIME)

        self._check_cancelled("starting the guest session")
        guest_session = startup.start_guest_session(self.config, self.display_identity, self.guest_env)
        self.session.register(guest_session)
        self.session.confirm_alive(Role.GUEST_SESSION)
        persistence.write_pid_file(self)

    def start_session(self) -> None:
        """
        Runs the startup pipeline up to RUNNING. Each stage gates the next.

        :raises SessionError: On the first fatal failure.
        """
        self._setup_runtime()
        self._launch_compositor()
        self._discover_and_bridge()
        self._launch_display_server()
        self._start_guest()
        self.session.transition(SessionState.RUNNING)

    #* --- Lifecycle ---
    def _report_failure(self, error: SessionError) -> None:
        """Logs everything needed to reconstruct the failure; the process exits right after."""
        if isinstance(error, SessionCancelled):
            log.warning(str(error))
            self.session.last_error = error
            if self.session.state not in (SessionState.FAILED, SessionState.STOPPED):
                self.session.transition(SessionState.STOPPED)
            return

        failed_in = self.session.failed_in if self.session.state is SessionState.FAILED else self.session.state
        log.critical(f"Session failed in state {failed_in.value}: {type(error).__name__}: {error}")
        for key, value in sorted(self.session.snapshot().items()):
            log.critical(f"  {key}: {value}")
        # Values captured when the error was raised.
        for key, value in sorted(error.diagnostics.items()):
            log.critical(f"  error.{key}: {value}")
        for role in (Role.COMPOSITOR, Role.DISPLAY_SERVER):
            process_utils.log_tail(self.session.get(role), self.config.LOG_TAIL_LINES)
        self.session.fail(error)

    def run(self) -> int:
        """
        Runs one full session: startup, monitoring, shutdown.

        :return: The process exit code: 0 only for a requested shutdown after RUNNING.
        """
        log.info("=" * 20 + " Session Starting " + "=" * 20)
        start_time = time.time()
        exit_code = EXIT_INTERNAL_ERROR
        try:
            self.start_session()
            log.info(f"All session components started in {time.time() - start_time:.2f} seconds.")
            log.info(f"Display port: {self.config.DISPLAY_BIND_PORT}, endpoint: {self.session.endpoint.path}")
            monitor = HealthMonitor(
                self.session, self.config.probe_address, self.config.DISPLAY_BIND_PORT,
                self.config.HEALTH_CHECK_INTERVAL, self.config.PROBE_CONNECT_TIMEOUT, self.config.LOG_TAIL_LINES,
                self.config.GRACEFUL_SHUTDOWN_TIMEOUT,
            )
            monitor.run(self.shutdown_signal_received)
            self.session.transition(SessionState.STOPPED)
            exit_code = EXIT_OK
        except SessionError as e:
            self._report_failure(e)
            exit_code = e.exit_code
        except Exception as e:
            log.critical(f"Unexpected error in the supervisor: {e}", exc_info=True)
            self.session.fail(e)
            exit_code = EXIT_INTERNAL_ERROR
        finally:
            self.shutdown_signal_received.set()
            shutdown.stop_session(self)

        runtime = time.strftime('%H:%M:%S', time.gmtime(time.time() - start_time))
        log.info(f"Supervisor exiting with code {exit_code} (state {self.session.state.value}, runtime {runtime}).")
        return exit_code
