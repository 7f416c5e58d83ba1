"""
The privilege bridge: the one place where the endpoint of the display identity is
made reachable from the supervisor's identity.

Only the endpoint leaf is widened to 0777; its runtime directory stays 0700, so other
accounts can connect through the link but cannot browse the directory.
"""
import os
import stat
import threading
import logging
from pathlib import Path
from typing import Optional

from vncsession.local.errors import BridgeError, SessionCancelled
from vncsession.local.session import Endpoint

log = logging.getLogger(__name__)

ENDPOINT_MODE = 0o777


def _bridge_once(endpoint: Endpoint, link_dir: Path) -> Path:
    """Creates the link and relaxes the endpoint permissions. Raises OSError on failure."""
    source = endpoint.path
    source_stat = os.stat(source)
    if not stat.S_ISSOCK(source_stat.st_mode):
        raise OSError(f"{source} is not a socket")

    link_path = link_dir / endpoint.name
    if link_path.absolute() != source.absolute():
        if link_path.is_symlink() or link_path.exists():
            link_path.unlink()
        os.symlink(source, link_path)

    os.chmod(source, ENDPOINT_MODE)

    if os.stat(link_path).st_ino != os.stat(source).st_ino:
        raise OSError(f"{link_path} does not resolve to {source}")
    return link_path


def bridge_endpoint(endpoint: Endpoint, link_dir: Path, retry_delay: float,
                    cancel_event: Optional[threading.Event] = None) -> Path:
    """
    Exposes `endpoint` in `link_dir` through a symbolic link and makes the socket
    connectable by other identities.

    A failure is retried once after `retry_delay` seconds to absorb the race of an
    endpoint disappearing momentarily between discovery and bridging.

    :param endpoint: The discovered endpoint.
    :param link_dir: The supervisor's own runtime directory.
    :param retry_delay: Seconds to wait before the single retry.
    :param cancel_event: The shutdown event; setting it aborts the wait.
    :return: The link path.
    :raises BridgeError: If both attempts fail.
    :raises SessionCancelled: If a shutdown was requested before the retry.
    """
    cancel_event = cancel_event or threading.Event()
    try:
        link_path = _bridge_once(endpoint, link_dir)
    except OSError as e:
        log.warning(f"Bridging {endpoint.path} failed ({e}); retrying in {retry_delay}s.")
        if cancel_event.wait(retry_delay):
            raise SessionCancelled(f"Shutdown requested while bridging {endpoint.path}.") from e
        try:
            link_path = _bridge_once(endpoint, link_dir)
        except OSError as retry_error:
            log.error(f"Bridging {endpoint.path} failed again: {retry_error}")
            raise BridgeError(
                f"Cannot bridge endpoint {endpoint.path} into {link_dir}: {retry_error}",
                {"endpoint_exists": endpoint.exists()},
            ) from retry_error

    mode = stat.S_IMODE(os.stat(endpoint.path).st_mode)
    log.info(
        f"Privilege bridge: source={endpoint.path} link={link_path} "
        f"mode={oct(mode)} owner={endpoint.owner.name}"
    )
    return link_path
