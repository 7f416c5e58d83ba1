import os
import time
import shutil
import psutil
import logging
import threading
import subprocess
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from vncsession.local.errors import LaunchError, SessionCancelled
from vncsession.local.identity import Identity
from vncsession.local.session import ManagedProcess, Role

log = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


#* --- Process Status ---
def pid_exists(pid: int) -> bool:
    """A wrapper for psutil.pid_exists for easy testing/mocking if needed."""
    return psutil.pid_exists(pid)

def get_process_from_pid(pid: int) -> psutil.Process:
    """A wrapper for psutil.Process for easy testing/mocking if needed."""
    return psutil.Process(pid)

def get_proc_status_string(proc: psutil.Process) -> str:
    """Gets a string representation of a process status."""
    try:
        if proc.status() == psutil.STATUS_ZOMBIE:
            return "zombie"
        return "running"
    except psutil.NoSuchProcess:
        return "stopped"
    except psutil.Error:
        return "unknown"

def resolve_executable(command: List[str]) -> Optional[str]:
    """Returns the full path of a command's executable, or None if it cannot be found."""
    if not command:
        return None
    return shutil.which(command[0])


#* --- Child Environment ---
def identity_popen_kwargs(identity: Identity) -> Dict[str, Any]:
    """Returns the Popen arguments that make the child run as the given identity."""
    if identity.is_current:
        return {}
    return {
        "user": identity.uid,
        "group": identity.gid,
        "extra_groups": os.getgrouplist(identity.name, identity.gid),
    }

def _working_dir(identity: Identity) -> str:
    return str(identity.home) if identity.home.is_dir() else "/"

def build_child_env(identity: Identity, runtime_dir: Path, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Synthesizes a clean environment for a child running as `identity`.

    Nothing from the supervisor's environment leaks through except PATH and the locale,
    in particular no WAYLAND_DISPLAY.

    :param identity: The account the child runs as.
    :param runtime_dir: The XDG runtime directory of that account.
    :param extra: Additional variables, applied last.
    :return: The environment dictionary.
    """
    env = {
        "PATH": os.environ.get("PATH", DEFAULT_PATH),
        "HOME": str(identity.home),
        "USER": identity.name,
        "LOGNAME": identity.name,
        "XDG_RUNTIME_DIR": str(runtime_dir),
    }
    for key in ("LANG", "LC_ALL"):
        if key in os.environ:
            env[key] = os.environ[key]
    if extra:
        env.update(extra)
    return env


#* --- Output Handling ---
def _read_pipe(pipe, process_name: str, level: int, line_handler: Optional[Callable] = None):
    """Target function for reader threads. Reads and logs lines from a subprocess pipe."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            if line_handler:
                line_handler(line)
            else:
                proc_logger.log(level, f"[{process_name}] {line}")
    except Exception as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()

def log_process_output(process: subprocess.Popen, name: str, line_handler: Optional[Callable] = None) -> List[threading.Thread]:
    """Starts background threads to consume and log a process's stdout/stderr."""
    threads = []
    if process.stdout:
        threads.append(threading.Thread(target=_read_pipe, args=(process.stdout, name, logging.INFO, line_handler), daemon=True))
    if process.stderr:
        threads.append(threading.Thread(target=_read_pipe, args=(process.stderr, name, logging.WARNING), daemon=True))
    for thread in threads:
        thread.start()
    return threads

def tail_file(path: Optional[Path], lines: int) -> List[str]:
    """Returns the last `lines` lines of a text file, empty if it cannot be read."""
    if path is None or lines <= 0:
        return []
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
    except OSError:
        return []

def log_tail(proc: Optional[ManagedProcess], lines: int) -> None:
    """Logs the end of a managed process's log file, the only trace of a crashed child."""
    if proc is None or proc.log_path is None:
        return
    tail = tail_file(proc.log_path, lines)
    if not tail:
        log.error(f"No output recorded for {proc.role.value} in {proc.log_path}")
        return
    log.error(f"Last {len(tail)} lines of {proc.log_path}:")
    for line in tail:
        log.error(f"  | {line}")


#* --- Process Creation ---
def launch_process(role: Role, args: List[str], identity: Identity, env: Mapping[str, str],
                   log_path: Path) -> ManagedProcess:
    """
    Spawns a long-lived child detached from the supervisor.

    The child gets its own session (no SIGHUP or terminal signals from the launcher),
    stdin from /dev/null and stdout/stderr appended to `log_path`. It is not waited on;
    its PID is captured for liveness probes.

    :param role: The role of the process in the session.
    :param args: The command line.
    :param identity: The account to run as.
    :param env: The complete child environment.
    :param log_path: The file receiving the child's output.
    :return: The ManagedProcess handle.
    :raises LaunchError: If the process cannot be spawned.
    """
    log.info(f"Starting {role.value} as '{identity.name}': {' '.join(args)}")
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as log_file:
            p = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL, stdout=log_file, stderr=subprocess.STDOUT,
                env=dict(env), cwd=_working_dir(identity),
                start_new_session=True, close_fds=True,
                **identity_popen_kwargs(identity)
            )
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        log.critical(f"Failed to start {role.value} ({args[0] if args else '?'}): {e}")
        raise LaunchError(f"Failed to start {role.value}: {e}") from e

    proc = ManagedProcess(role, p, identity, log_path)
    log.info(f"{role.value} started with PID: {p.pid} (output in {log_path})")
    return proc

def run_command(name: str, args: List[str], identity: Identity, env: Mapping[str, str],
                timeout: float, cancel_event: threading.Event, poll_interval: float = 0.5,
                grace_period: float = 2.0) -> int:
    """
    Runs a one-shot command to completion, relaying its output to the `proc.<name>` logger.

    The wait is cancellable: when `cancel_event` is set, the command is terminated.

    :return: The exit status of the command.
    :raises subprocess.TimeoutExpired: If the command outlives `timeout`.
    :raises SessionCancelled: If a shutdown was requested while waiting.
    :raises OSError: If the command cannot be spawned.
    """
    log.info(f"Running {name} as '{identity.name}': {' '.join(args)}")
    p = subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
        env=dict(env), cwd=_working_dir(identity),
        start_new_session=True,
        **identity_popen_kwargs(identity)
    )
    readers = log_process_output(p, name)
    deadline = time.monotonic() + timeout
    try:
        while True:
            remaining = deadline - time.monotonic()
            try:
                return p.wait(timeout=max(0.0, min(poll_interval, remaining)))
            except subprocess.TimeoutExpired:
                pass
            if cancel_event.is_set():
                log.warning(f"Shutdown requested, terminating {name} (PID {p.pid}).")
                terminate_tree(p.pid, grace_period)
                raise SessionCancelled(f"Shutdown requested while running {name}.")
            if time.monotonic() >= deadline:
                log.error(f"{name} did not finish within {timeout}s, terminating it.")
                terminate_tree(p.pid, grace_period)
                raise subprocess.TimeoutExpired(args, timeout)
    finally:
        p.poll()
        for reader in readers:
            reader.join(timeout=1)


#* --- Process Termination ---
def _collect_tree(pid: int) -> List[psutil.Process]:
    """Returns the process and all of its descendants, children first."""
    try:
        parent = get_process_from_pid(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return []
    return list(reversed(children)) + [parent]

def _collect_group(pgid: int) -> List[psutil.Process]:
    """
    Returns the live members of a process group.

    Descendants keep their group after their parent died and they were reparented,
    so this finds what `_collect_tree` cannot. The supervisor's own group is never
    returned.
    """
    if pgid == os.getpgrp():
        return []
    members = []
    for proc in psutil.process_iter():
        try:
            if os.getpgid(proc.pid) == pgid and proc.status() != psutil.STATUS_ZOMBIE:
                members.append(proc)
        except (OSError, psutil.Error):
            continue
    return members

def terminate_processes(processes: Iterable[psutil.Process], timeout: float) -> None:
    """
    Sends SIGTERM, waits up to `timeout` seconds, then SIGKILLs what is left.

    :param processes: The processes to stop.
    :param timeout: The grace period before escalating.
    """
    procs = list(processes)
    for proc in procs:
        try:
            log.debug(f"Sending SIGTERM to {proc.name()} (PID {proc.pid})")
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            log.warning(f"Not permitted to signal PID {proc.pid}.")

    try:
        _, alive = psutil.wait_procs(procs, timeout=timeout)
    except psutil.NoSuchProcess:
        alive = []

    if alive:
        log.warning(f"{len(alive)} processes did not terminate gracefully. Forcing shutdown...")
    for proc in alive:
        try:
            log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            log.error(f"Not permitted to kill PID {proc.pid}.")
    if alive:
        psutil.wait_procs(alive, timeout=1)

def terminate_tree(pid: int, timeout: float) -> None:
    """Stops a process, all of its descendants and the group it leads."""
    found = {p.pid: p for p in _collect_tree(pid)}
    for member in _collect_group(pid):
        found.setdefault(member.pid, member)
    terminate_processes(found.values(), timeout)

def stop_managed_process(proc: ManagedProcess, timeout: float) -> None:
    """
    Stops a managed process with everything it spawned and reaps the direct child.

    Managed children lead their own process group (`start_new_session`), so the group
    ID equals the leader's PID. The group is stopped even when the leader already
    exited on its own.
    """
    if proc.is_alive():
        log.info(f"Stopping {proc.role.value} (PID {proc.pid})...")
        terminate_tree(proc.pid, timeout)
    else:
        leftovers = _collect_group(proc.pid)
        if leftovers:
            log.warning(
                f"{proc.role.value} (PID {proc.pid}) exited but left {len(leftovers)} "
                f"processes in its group. Stopping them..."
            )
            terminate_processes(leftovers, timeout)
    try:
        proc.popen.wait(timeout=1)
    except subprocess.TimeoutExpired:
        log.error(f"{proc.role.value} (PID {proc.pid}) could not be reaped.")
