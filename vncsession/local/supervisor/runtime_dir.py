import os
import stat
import socket
import fnmatch
import logging
from pathlib import Path
from typing import List

from vncsession.local.errors import SetupError
from vncsession.local.identity import Identity

log = logging.getLogger(__name__)

RUNTIME_DIR_MODE = 0o700
LOCK_SUFFIX = ".lock"


def runtime_dir_for(identity: Identity, root: Path) -> Path:
    """Returns the per-identity runtime directory path (e.g. /run/user/1000)."""
    return Path(root) / str(identity.uid)


def ensure_runtime_dir(identity: Identity, path: Path) -> Path:
    """
    Creates the runtime directory if needed, owned by `identity` and mode 0700.
    Safe to call on every session start.

    :param identity: The owner of the directory.
    :param path: The directory to secure.
    :return: The directory path.
    :raises SetupError: If the directory cannot be created, chowned or chmodded.
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        st = path.lstat()
        if not stat.S_ISDIR(st.st_mode):
            raise SetupError(f"Runtime path '{path}' exists but is not a directory.")
        if (st.st_uid, st.st_gid) != (identity.uid, identity.gid):
            os.chown(path, identity.uid, identity.gid)
        os.chmod(path, RUNTIME_DIR_MODE)
    except OSError as e:
        raise SetupError(f"Cannot set up runtime directory '{path}' for '{identity.name}': {e}") from e
    log.info(f"Runtime directory ready: {path} (owner {identity.name}, mode {oct(RUNTIME_DIR_MODE)})")
    return path


def _is_socket(path: Path) -> bool:
    try:
        return stat.S_ISSOCK(path.lstat().st_mode)
    except OSError:
        return False


def list_endpoints(directory: Path, pattern: str) -> List[Path]:
    """
    Lists the endpoint sockets in a directory matching a glob pattern, lock files excluded.

    :return: Matching socket paths, sorted by name.
    """
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return []
    return [
        directory / name for name in names
        if fnmatch.fnmatch(name, pattern) and not name.endswith(LOCK_SUFFIX) and _is_socket(directory / name)
    ]


def socket_in_use(path: Path, timeout: float = 0.5) -> bool:
    """Returns True if a process accepts connections on the unix socket."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        s.settimeout(timeout)
        try:
            s.connect(str(path))
            return True
        except OSError:
            return False


def remove_stale_endpoints(directory: Path, pattern: str) -> List[Path]:
    """
    Removes what a previous unclean shutdown left behind: endpoint sockets nobody
    listens on, their lock files, and links whose target is gone.

    :return: The removed paths.
    """
    removed: List[Path] = []
    try:
        names = sorted(os.listdir(directory))
    except FileNotFoundError:
        return removed
    except OSError as e:
        raise SetupError(f"Cannot inspect runtime directory '{directory}': {e}") from e

    for name in names:
        if not fnmatch.fnmatch(name, pattern) or name.endswith(LOCK_SUFFIX):
            continue
        path = directory / name
        if path.is_symlink():
            if path.exists():
                continue
        elif _is_socket(path):
            if socket_in_use(path):
                log.warning(f"Endpoint {path} is still in use by another process; leaving it.")
                continue
        else:
            continue
        try:
            path.unlink()
            removed.append(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SetupError(f"Cannot remove stale endpoint '{path}': {e}") from e

    for name in os.listdir(directory):
        if not name.endswith(LOCK_SUFFIX) or not fnmatch.fnmatch(name[:-len(LOCK_SUFFIX)], pattern):
            continue
        if (directory / name[:-len(LOCK_SUFFIX)]).exists():
            continue
        try:
            (directory / name).unlink()
            removed.append(directory / name)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SetupError(f"Cannot remove stale lock file '{directory / name}': {e}") from e

    for path in removed:
        log.info(f"Removed stale endpoint artifact: {path}")
    return removed
