"""
Exception taxonomy of the session supervisor.

Every error that ends a Session derives from `SessionError` and carries the process
exit code the supervisor terminates with, so the outer process manager can tell
failure classes apart (e.g. back off longer on repeated initialization failures).
"""
from typing import Any, Dict, Optional

EXIT_OK = 0
EXIT_INTERNAL_ERROR = 1
EXIT_CONFIG_ERROR = 2


class ConfigError(Exception):
    """Raised when the configuration fails validation. No Session is created."""
    exit_code = EXIT_CONFIG_ERROR


class SessionError(Exception):
    """Base class for all errors that are fatal to the current Session."""
    exit_code = EXIT_INTERNAL_ERROR

    def __init__(self, message: str, diagnostics: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.diagnostics: Dict[str, Any] = dict(diagnostics or {})


class SetupError(SessionError):
    """The runtime directory could not be created or secured."""
    exit_code = 10


class LaunchError(SessionError):
    """A managed process could not be spawned or a one-shot command failed."""
    exit_code = 11


class CompositorDiedError(LaunchError):
    """The compositor exited while the supervisor was waiting on it."""
    exit_code = 12


class DiscoveryTimeoutError(SessionError):
    """The compositor never created its communication endpoint."""
    exit_code = 13


class BridgeError(SessionError):
    """The endpoint could not be exposed to the supervisor's identity."""
    exit_code = 14


class ReadinessTimeoutError(SessionError):
    """The remote-display server never accepted connections on its port."""
    exit_code = 15

    def __init__(self, message: str, compositor_alive: bool, endpoint_exists: bool,
                 display_server_alive: bool) -> None:
        super().__init__(message, {
            "compositor_alive": compositor_alive,
            "endpoint_exists": endpoint_exists,
            "display_server_alive": display_server_alive,
        })
        self.compositor_alive = compositor_alive
        self.endpoint_exists = endpoint_exists
        self.display_server_alive = display_server_alive


class InitializationError(SessionError):
    """The one-time guest environment initialization failed or timed out."""
    exit_code = 16


class HealthCheckFailure(SessionError):
    """A critical component stopped being alive or listening while Running."""
    exit_code = 17


class SessionCancelled(SessionError):
    """A shutdown was requested before the Session reached Running."""
    exit_code = 18
