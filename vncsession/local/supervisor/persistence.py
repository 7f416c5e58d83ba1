import os
import json
import psutil
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from .supervisor import SessionSupervisor

log = logging.getLogger(__name__)

SUPERVISOR_KEY = "supervisor"


def get_pid_info(pid_file: Path) -> Optional[Dict[str, int]]:
    """
    Reads the PID file from disk and returns its contents.

    :param pid_file: The PID file path.
    :return: A dictionary of PIDs if the file exists and is valid, else None.
    """
    if not pid_file.exists():
        return None
    try:
        with pid_file.open("r") as f:
            pids = json.load(f)
        if not isinstance(pids, dict) or not all(isinstance(v, int) for v in pids.values()):
            pid_file.unlink()
            return None
        return pids
    except (json.JSONDecodeError, IOError):
        pid_file.unlink(missing_ok=True)
        return None

def write_pid_file(manager: "SessionSupervisor") -> None:
    """
    Atomically writes the supervisor PID and the current running process PIDs to the PID file.

    :param manager: The SessionSupervisor instance.
    """
    pid_file = manager.config.pid_file_path
    pid_dict = {SUPERVISOR_KEY: os.getpid()}
    pid_dict.update({role.value: proc.pid for role, proc in manager.session.processes.items() if psutil.pid_exists(proc.pid)})
    pid_dict.update(manager.session.aux_pids)
    temp_pid_path = pid_file.with_suffix(".tmp")
    try:
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        with temp_pid_path.open("w") as f:
            json.dump(pid_dict, f, indent=4)
        temp_pid_path.replace(pid_file)
    except (IOError, OSError) as e:
        log.error(f"Failed to write PID file: {e}", exc_info=True)
    finally:
        temp_pid_path.unlink(missing_ok=True)

def remove_pid_file(pid_file: Path) -> None:
    pid_file.unlink(missing_ok=True)
    log.debug("Cleaned up PID file.")

def find_stale_processes(pid_file: Path) -> Dict[str, psutil.Process]:
    """
    Returns the still-running processes recorded by a previous supervisor run.

    A recorded PID only counts if its process is older than the PID file, otherwise
    the PID has been reused by an unrelated process.

    :param pid_file: The PID file path.
    :return: Process name to psutil.Process for every recorded process still alive.
    """
    pid_info = get_pid_info(pid_file) or {}
    if not pid_info:
        return {}
    written_at = pid_file.stat().st_mtime
    stale = {}
    for name, pid in pid_info.items():
        if pid == os.getpid() or not psutil.pid_exists(pid):
            continue
        try:
            proc = psutil.Process(pid)
            if proc.create_time() > written_at + 1:
                log.debug(f"PID {pid} ({name}) was reused by {proc.name()}; ignoring.")
                continue
            stale[name] = proc
        except psutil.NoSuchProcess:
            continue
    return stale
