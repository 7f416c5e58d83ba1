import os
import pwd
import logging
from pathlib import Path
from typing import NamedTuple

from vncsession.local.errors import SetupError

log = logging.getLogger(__name__)


class Identity(NamedTuple):
    """An OS account a process runs as."""
    name: str
    uid: int
    gid: int
    home: Path

    @property
    def is_current(self) -> bool:
        """True if this is the effective user of the supervisor itself."""
        return self.uid == os.geteuid()


def resolve_identity(name: str) -> Identity:
    """
    Looks up an account by name.

    :param name: The account name (e.g. 'waydroid').
    :return: The resolved Identity.
    :raises SetupError: If the account does not exist.
    """
    try:
        entry = pwd.getpwnam(name)
    except KeyError as e:
        raise SetupError(f"Service account '{name}' does not exist.") from e
    return Identity(entry.pw_name, entry.pw_uid, entry.pw_gid, Path(entry.pw_dir))


def current_identity() -> Identity:
    """Returns the identity the supervisor runs as."""
    entry = pwd.getpwuid(os.geteuid())
    return Identity(entry.pw_name, entry.pw_uid, entry.pw_gid, Path(entry.pw_dir))
