import os
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

from vncsession.local.errors import CompositorDiedError, DiscoveryTimeoutError, SessionCancelled
from vncsession.local.identity import Identity
from vncsession.local.session import Endpoint, ManagedProcess
from vncsession.local.supervisor.polling import PollAborted, PollCancelled, PollTimeout, ReadinessCheck
from vncsession.local.supervisor.runtime_dir import list_endpoints

log = logging.getLogger(__name__)


def _dump_directory(directory: Path) -> None:
    """Logs the directory listing for post-mortem diagnostics."""
    log.error(f"Contents of {directory}:")
    try:
        entries = sorted(os.scandir(directory), key=lambda e: e.name)
    except OSError as e:
        log.error(f"  <cannot list: {e}>")
        return
    if not entries:
        log.error("  <empty>")
    for entry in entries:
        try:
            st = entry.stat(follow_symlinks=False)
            log.error(f"  {oct(st.st_mode & 0o7777)} uid={st.st_uid} {entry.name}")
        except OSError:
            log.error(f"  ? {entry.name}")


def discover_endpoint(compositor: ManagedProcess, directory: Path, pattern: str, owner: Identity,
                      interval: float, max_attempts: int, cancel_event: threading.Event,
                      preexisting: Iterable[Path] = ()) -> Endpoint:
    """
    Waits for the compositor to create its endpoint socket.

    The compositor picks its own endpoint name, so the directory is polled for a new
    socket matching `pattern` that was not in `preexisting`.

    :param compositor: The compositor process; its death aborts the wait.
    :param directory: The compositor's runtime directory.
    :param pattern: Glob pattern of endpoint names (e.g. 'wayland-*').
    :param owner: The identity owning the endpoint.
    :param interval: Seconds between polls.
    :param max_attempts: Number of polls before giving up.
    :param cancel_event: The shutdown event.
    :param preexisting: Endpoints present before the compositor was spawned.
    :return: The discovered Endpoint.
    :raises CompositorDiedError: If the compositor exits while waiting.
    :raises DiscoveryTimeoutError: If no endpoint appears in time.
    :raises SessionCancelled: If a shutdown is requested.
    """
    known = set(preexisting)
    log.info(f"Waiting for {compositor.role.value} endpoint '{pattern}' in {directory}...")

    def new_endpoint() -> Optional[Path]:
        candidates = [path for path in list_endpoints(directory, pattern) if path not in known]
        if len(candidates) > 1:
            log.warning(f"Multiple new endpoints found ({', '.join(p.name for p in candidates)}); using {candidates[0].name}.")
        return candidates[0] if candidates else None

    check = ReadinessCheck(
        "compositor endpoint", new_endpoint, interval, max_attempts,
        abort=lambda: not compositor.is_alive()
    )
    try:
        path = check.run(cancel_event)
    except PollCancelled as e:
        raise SessionCancelled("Shutdown requested during endpoint discovery.") from e
    except PollAborted as e:
        log.error(f"Compositor (PID {compositor.pid}) exited with status {compositor.returncode} before creating an endpoint.")
        raise CompositorDiedError(
            f"Compositor died during endpoint discovery (exit status {compositor.returncode}).",
            {"compositor_alive": False, "endpoint_exists": False},
        ) from e
    except PollTimeout as e:
        log.error(f"No endpoint matching '{pattern}' appeared after {max_attempts} attempts.")
        _dump_directory(directory)
        raise DiscoveryTimeoutError(
            f"No endpoint found in {directory} after {max_attempts * interval:.0f}s.",
            {"compositor_alive": compositor.is_alive(), "endpoint_exists": False},
        ) from e

    endpoint = Endpoint(path, owner)
    log.info(f"Detected endpoint: {endpoint.name} ({endpoint.path})")
    return endpoint
