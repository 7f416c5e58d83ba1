"""
Data model of one supervised session: its state machine, the process table and the
endpoint the compositor created.
"""
import enum
import time
import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Set

import psutil

from vncsession.local.identity import Identity

log = logging.getLogger(__name__)


class SessionState(enum.Enum):
    STOPPED = "Stopped"
    LAUNCHING_COMPOSITOR = "LaunchingCompositor"
    WAITING_FOR_ENDPOINT = "WaitingForEndpoint"
    LAUNCHING_DISPLAY_SERVER = "LaunchingDisplayServer"
    WAITING_FOR_READINESS = "WaitingForReadiness"
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    DEGRADED = "Degraded"
    FAILED = "Failed"


class Role(enum.Enum):
    COMPOSITOR = "compositor"
    DISPLAY_SERVER = "display_server"
    GUEST_RUNTIME = "guest_runtime"
    GUEST_SESSION = "guest_session"


# Roles whose unexpected exit is fatal to the Session.
CRITICAL_ROLES = (Role.COMPOSITOR, Role.DISPLAY_SERVER)

# Reverse of startup order.
SHUTDOWN_ORDER = (Role.GUEST_SESSION, Role.GUEST_RUNTIME, Role.DISPLAY_SERVER, Role.COMPOSITOR)

_PIPELINE_STATES = (
    SessionState.LAUNCHING_COMPOSITOR,
    SessionState.WAITING_FOR_ENDPOINT,
    SessionState.LAUNCHING_DISPLAY_SERVER,
    SessionState.WAITING_FOR_READINESS,
    SessionState.INITIALIZING,
)

_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.STOPPED: {SessionState.LAUNCHING_COMPOSITOR, SessionState.FAILED},
    SessionState.LAUNCHING_COMPOSITOR: {SessionState.WAITING_FOR_ENDPOINT},
    SessionState.WAITING_FOR_ENDPOINT: {SessionState.LAUNCHING_DISPLAY_SERVER},
    SessionState.LAUNCHING_DISPLAY_SERVER: {SessionState.WAITING_FOR_READINESS},
    SessionState.WAITING_FOR_READINESS: {SessionState.INITIALIZING},
    SessionState.INITIALIZING: {SessionState.RUNNING},
    SessionState.RUNNING: {SessionState.DEGRADED, SessionState.FAILED, SessionState.STOPPED},
    SessionState.DEGRADED: {SessionState.RUNNING, SessionState.FAILED, SessionState.STOPPED},
    SessionState.FAILED: set(),
}
# Any pipeline stage may fail or be cancelled.
for _state in _PIPELINE_STATES:
    _TRANSITIONS[_state] |= {SessionState.FAILED, SessionState.STOPPED}


class InvalidTransition(RuntimeError):
    """Raised on a state change the session state machine does not allow."""


class Endpoint:
    """A socket file created by the compositor in its runtime directory."""

    def __init__(self, path: Path, owner: Identity, discovered_at: Optional[float] = None) -> None:
        self.path = Path(path)
        self.owner = owner
        self.discovered_at = time.time() if discovered_at is None else discovered_at

    @property
    def name(self) -> str:
        """The endpoint name as clients expect it in WAYLAND_DISPLAY."""
        return self.path.name

    def exists(self) -> bool:
        return self.path.exists()

    def __repr__(self) -> str:
        return f"Endpoint(path='{self.path}', owner='{self.owner.name}')"


class ManagedProcess:
    """A child process under supervision."""

    def __init__(self, role: Role, popen: subprocess.Popen, identity: Identity,
                 log_path: Optional[Path] = None) -> None:
        self.role = role
        self.popen = popen
        self.pid = popen.pid
        self.identity = identity
        self.log_path = log_path
        self.started_at = time.time()
        self.last_observed_alive: Optional[float] = None
        try:
            self.process: Optional[psutil.Process] = psutil.Process(self.pid)
        except psutil.NoSuchProcess:
            self.process = None

    def is_alive(self) -> bool:
        """
        Probes the process. Reaps it if it exited; zombies count as dead.

        :return: True if the process is still running.
        """
        if self.popen.poll() is not None:
            return False
        try:
            alive = (
                self.process is not None
                and self.process.is_running()
                and self.process.status() != psutil.STATUS_ZOMBIE
            )
        except psutil.NoSuchProcess:
            alive = False
        except psutil.AccessDenied:
            alive = True
        if alive:
            self.last_observed_alive = time.time()
        return alive

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.poll()

    def __repr__(self) -> str:
        return f"ManagedProcess(role={self.role.value}, pid={self.pid}, identity='{self.identity.name}')"


class Session:
    """
    The whole supervised pipeline of one supervisor invocation.

    A Session is never resumed: every supervisor run creates a fresh one in STOPPED.
    """

    def __init__(self) -> None:
        self.state = SessionState.STOPPED
        self.started_at = time.time()
        self.last_error: Optional[BaseException] = None
        self.failed_in: Optional[SessionState] = None
        self.processes: Dict[Role, ManagedProcess] = {}
        self.confirmed_roles: Set[Role] = set()
        self.endpoint: Optional[Endpoint] = None
        self.bridge_link: Optional[Path] = None
        self.aux_pids: Dict[str, int] = {}
        self.history: List[SessionState] = [self.state]

    def transition(self, new_state: SessionState) -> None:
        """
        Moves the session to a new state.

        :raises InvalidTransition: If the state machine does not allow the change.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"Illegal session transition {self.state.value} -> {new_state.value}")
        if new_state is SessionState.RUNNING:
            missing = [role.value for role in Role if role not in self.confirmed_roles]
            if missing:
                raise InvalidTransition(f"Cannot reach Running, never confirmed alive: {', '.join(missing)}")
        log.debug(f"Session state: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: BaseException) -> None:
        """Records a fatal error and moves to FAILED if the session is not already terminal."""
        self.last_error = error
        if self.state not in (SessionState.FAILED, SessionState.STOPPED):
            self.failed_in = self.state
            self.transition(SessionState.FAILED)

    def register(self, proc: ManagedProcess) -> None:
        self.processes[proc.role] = proc

    def unregister(self, role: Role) -> Optional[ManagedProcess]:
        return self.processes.pop(role, None)

    def confirm_alive(self, role: Role) -> None:
        self.confirmed_roles.add(role)

    def get(self, role: Role) -> Optional[ManagedProcess]:
        return self.processes.get(role)

    def is_alive(self, role: Role) -> bool:
        proc = self.processes.get(role)
        return proc is not None and proc.is_alive()

    @property
    def is_running(self) -> bool:
        return self.state in (SessionState.RUNNING, SessionState.DEGRADED)

    def snapshot(self) -> Dict[str, object]:
        """Returns the diagnostic state logged on every fatal error."""
        snap: Dict[str, object] = {"state": self.state.value}
        for role in Role:
            proc = self.processes.get(role)
            snap[f"{role.value}_alive"] = proc.is_alive() if proc else None
        snap["endpoint"] = str(self.endpoint.path) if self.endpoint else None
        snap["endpoint_exists"] = self.endpoint.exists() if self.endpoint else False
        snap["bridge_link_exists"] = self.bridge_link.exists() if self.bridge_link else False
        return snap
