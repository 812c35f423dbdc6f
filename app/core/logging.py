import logging
import sys
from typing import Optional

from app.core.config import settings

def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure process-wide logging for the coordinator.

    Args:
        level: Override for settings.log_level
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level or settings.log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    )
    root_logger.addHandler(handler)

    # Silence noise
    for noisy in ("uvicorn.access", "httpx", "nats"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
