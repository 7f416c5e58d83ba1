import logging
import threading
from typing import List

from vncsession.local.errors import HealthCheckFailure
from vncsession.local.session import CRITICAL_ROLES, Role, Session, SessionState
from vncsession.local.supervisor import process_utils
from vncsession.local.supervisor.polling import port_is_listening

log = logging.getLogger(__name__)


class HealthMonitor:
    """
    Watches a Running session. It only detects: any failure of the compositor, the
    display server or the display port ends the session, and restarting is left to
    whoever launched the supervisor.

    A dead critical process stays registered, so the shutdown sequence still stops
    whatever it left behind in its process group.
    """

    def __init__(self, session: Session, probe_address: str, port: int, interval: float,
                 connect_timeout: float = 1.0, log_tail_lines: int = 20, grace_period: float = 2.0) -> None:
        self.session = session
        self.probe_address = probe_address
        self.port = port
        self.interval = interval
        self.connect_timeout = connect_timeout
        self.log_tail_lines = log_tail_lines
        self.grace_period = grace_period

    def check_once(self) -> None:
        """
        Runs a single health check tick.

        :raises HealthCheckFailure: If a critical component is down.
        """
        failures: List[str] = []
        for role in CRITICAL_ROLES:
            proc = self.session.get(role)
            if proc is None or not proc.is_alive():
                status = proc.returncode if proc is not None else None
                failures.append(f"{role.value} died (exit status {status})")

        if not port_is_listening(self.probe_address, self.port, self.connect_timeout):
            failures.append(f"display port {self.port} is not listening")

        if failures:
            diagnostics = self.session.snapshot()
            raise HealthCheckFailure("; ".join(failures), diagnostics)

        guest = self.session.get(Role.GUEST_SESSION)
        if guest is not None and not guest.is_alive():
            log.warning(f"Guest session (PID {guest.pid}) exited with status {guest.returncode}; session degraded.")
            process_utils.log_tail(guest, self.log_tail_lines)
            process_utils.stop_managed_process(guest, self.grace_period)
            self.session.unregister(Role.GUEST_SESSION)
            if self.session.state is SessionState.RUNNING:
                self.session.transition(SessionState.DEGRADED)

    def run(self, cancel_event: threading.Event) -> None:
        """
        Ticks every `interval` seconds until a check fails or a shutdown is requested.

        :param cancel_event: The shutdown event.
        :raises HealthCheckFailure: On the first failed check; the session is FAILED by then.
        """
        if not self.session.is_running:
            raise RuntimeError(f"Health monitor started in state {self.session.state.value}")
        log.info(f"Entering monitoring loop (every {self.interval}s).")
        while not cancel_event.is_set():
            try:
                self.check_once()
            except HealthCheckFailure as e:
                log.critical(f"Health check failed: {e}")
                self.session.fail(e)
                raise
            if cancel_event.wait(self.interval):
                break
        log.info("Monitoring loop stopped by shutdown request.")
