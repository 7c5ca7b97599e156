import logging
import sys

logger = logging.getLogger("linkgate")


def setup_logging(level: str = "INFO") -> None:
    """
    Configures the root logger for the service.
    Safe to call more than once; only the first call installs a handler.
    """
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
        stream=sys.stdout,
    )
    logger.setLevel(level.upper())
    # Silence noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
