import shutil
import logging
import threading
import subprocess
from pathlib import Path
from typing import List, Mapping

from vncsession.local.errors import InitializationError
from vncsession.local.identity import Identity
from vncsession.local.supervisor import process_utils

log = logging.getLogger(__name__)


class InitializationMarker:
    """A directory whose existence means the guest environment is initialized."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @property
    def present(self) -> bool:
        return self.path.exists()

    def create(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)

    def remove(self) -> None:
        if self.path.is_dir() and not self.path.is_symlink():
            shutil.rmtree(self.path)
        else:
            self.path.unlink()


def initialize_environment(marker: InitializationMarker, command: List[str], identity: Identity,
                           env: Mapping[str, str], timeout: float, cancel_event: threading.Event,
                           grace_period: float = 2.0) -> bool:
    """
    Runs the one-time guest environment initialization unless the marker exists.

    The command runs once, without retry. The marker is only created after it exits 0;
    if it fails, a marker the command created itself is removed again so that the next
    session start retries the whole initialization.

    :param marker: The initialization marker.
    :param command: The full initialization command line.
    :param identity: The account to run as.
    :param env: The child environment.
    :param timeout: The deadline for the whole command, in seconds.
    :param cancel_event: The shutdown event.
    :param grace_period: Seconds between SIGTERM and SIGKILL when the command is stopped.
    :return: True if initialization ran, False if it was skipped.
    :raises InitializationError: If the command fails, times out or cannot be started.
    :raises SessionCancelled: If a shutdown is requested while it runs.
    """
    if marker.present:
        log.info(f"Guest environment already initialized ({marker.path} present); skipping.")
        return False

    log.info("Initializing guest environment (first run, this can take several minutes)...")
    try:
        status = process_utils.run_command(
            "guest_init", command, identity, env, timeout, cancel_event,
            grace_period=grace_period
        )
    except subprocess.TimeoutExpired as e:
        _discard_partial_marker(marker)
        raise InitializationError(f"Guest initialization did not finish within {timeout:.0f}s.") from e
    except OSError as e:
        raise InitializationError(f"Cannot run guest initialization: {e}") from e
    except BaseException:
        _discard_partial_marker(marker)
        raise

    if status != 0:
        _discard_partial_marker(marker)
        raise InitializationError(f"Guest initialization failed with exit status {status}.",
                                  {"exit_status": status})

    marker.create()
    log.info(f"Guest environment initialized; marker created at {marker.path}")
    return True


def _discard_partial_marker(marker: InitializationMarker) -> None:
    if not marker.present:
        return
    log.warning(f"Removing marker {marker.path} left by the failed initialization.")
    try:
        marker.remove()
    except OSError as e:
        log.error(f"Could not remove partial marker {marker.path}: {e}")
