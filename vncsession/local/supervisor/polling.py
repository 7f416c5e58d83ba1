"""
Cancellable polling primitives.

No OS-level "ready" notification crosses the privilege boundary, so the supervisor
polls. Every wait goes through `threading.Event.wait` on the shutdown event, which
returns as soon as a shutdown is requested instead of sleeping out the interval.
"""
import socket
import logging
import threading
from typing import Callable, Generic, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class PollCancelled(Exception):
    """Raised when the shutdown event is set while polling."""


class PollAborted(Exception):
    """Raised when the abort predicate of a ReadinessCheck fires."""


class PollTimeout(Exception):
    """Raised when a ReadinessCheck exhausts its attempts."""

    def __init__(self, name: str, attempts: int) -> None:
        super().__init__(f"{name} not satisfied after {attempts} attempts")
        self.attempts = attempts


class ReadinessCheck(Generic[T]):
    """
    A polling contract: evaluate `predicate` every `interval` seconds, at most
    `max_attempts` times, until it returns something truthy.

    `abort` is evaluated before each attempt; when it returns True the poll stops
    immediately with PollAborted (e.g. the process being waited on has died).
    """

    def __init__(self, name: str, predicate: Callable[[], Optional[T]], interval: float,
                 max_attempts: int, abort: Optional[Callable[[], bool]] = None,
                 progress_every: int = 5) -> None:
        self.name = name
        self.predicate = predicate
        self.interval = interval
        self.max_attempts = max_attempts
        self.abort = abort
        self.progress_every = progress_every

    def run(self, cancel_event: threading.Event) -> T:
        """
        Polls until the predicate holds.

        :param cancel_event: The shutdown event; setting it interrupts the wait.
        :return: The first truthy predicate result.
        :raises PollCancelled: If `cancel_event` is set.
        :raises PollAborted: If the abort predicate fires.
        :raises PollTimeout: If `max_attempts` are exhausted.
        """
        for attempt in range(1, self.max_attempts + 1):
            if cancel_event.is_set():
                raise PollCancelled(self.name)
            if self.abort is not None and self.abort():
                raise PollAborted(self.name)

            result = self.predicate()
            if result:
                log.debug(f"{self.name}: satisfied on attempt {attempt}/{self.max_attempts}")
                return result

            if self.progress_every and attempt % self.progress_every == 0:
                log.info(f"Still waiting for {self.name}... ({attempt}/{self.max_attempts})")
            if attempt < self.max_attempts and cancel_event.wait(self.interval):
                raise PollCancelled(self.name)
        raise PollTimeout(self.name, self.max_attempts)


def port_is_listening(host: str, port: int, timeout: float = 1.0) -> bool:
    """
    Connect-and-close probe of a TCP port.

    :return: True if something accepted the connection.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
