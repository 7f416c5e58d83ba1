"""
This is a minimal entry point script for the supervisor process, used as the
ExecStart of the systemd unit.

Its sole responsibility is to load the configuration, instantiate the
SessionSupervisor and run one session, exiting with its code so the unit's
restart policy can act on failures.
"""
import sys
import logging

from vncsession.log.setup import setup_logging
from vncsession.local.config import load_config
from vncsession.local.console.handler import run_session
from vncsession.local.errors import EXIT_CONFIG_ERROR, ConfigError

log = logging.getLogger(__name__)


if __name__ == "__main__":
    setup_logging(logging.DEBUG if "--verbose" in sys.argv else logging.INFO)
    try:
        config = load_config()
    except ConfigError as e:
        log.critical(f"Cannot load configuration: {e}")
        sys.exit(EXIT_CONFIG_ERROR)
    sys.exit(run_session(config))
