"""
Command line entry point for the compute relay.

Configuration comes from the environment (see ``RelayConfig.from_env``);
the process runs until it receives SIGINT or SIGTERM.
"""
import logging
import signal
import sys
from typing import Optional

from pydantic import ValidationError

from .config import RelayConfig
from .exceptions import ConfigurationError
from .service import RelayService
from .version import __version__

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

logger = logging.getLogger("compute_relay")


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")


def main(config: Optional[RelayConfig] = None) -> int:
    """Run the relay until a shutdown signal arrives; returns the exit code."""
    if config is None:
        try:
            config = RelayConfig.from_env()
        except (ValidationError, ValueError) as e:
            configure_logging("INFO")
            logger.error(f"Invalid configuration: {e}")
            return 1

    configure_logging(config.log_level)
    logger.info(f"compute-relay {__version__}")

    try:
        service = RelayService.from_config(config)
    except (ConfigurationError, ValueError) as e:
        logger.error(f"Failed to start service: {e}")
        return 1

    def _shutdown(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}")
        service.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        service.start()
    except Exception as e:
        logger.error(f"Relay stopped unexpectedly: {e}")
        service.stop()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
