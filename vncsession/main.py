import sys
import logging

# Basic console logger for messages BEFORE full setup is complete.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import vncsession.local.console as console
from vncsession.log.setup import setup_logging
from vncsession.local.config import load_config
from vncsession.local.errors import EXIT_CONFIG_ERROR, ConfigError


def main() -> None:
    """The main entry point of the `vncsession` command."""
    setup_logging(logging.INFO)

    if len(sys.argv) < 2:
        sys.exit(console.print_help())

    command, args = sys.argv[1].lower(), sys.argv[2:]
    try:
        config = load_config()
    except ConfigError as e:
        log.critical(f"Cannot load configuration: {e}")
        sys.exit(EXIT_CONFIG_ERROR)

    sys.exit(console.execute_command(command, args, config))

if __name__ == "__main__":
    main()
