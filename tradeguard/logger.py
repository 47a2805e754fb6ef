# tradeguard/logger.py
import logging
import sys

from tradeguard.config import config


def setup_logging(level: str = None):
    """Configures structured logging for the application."""
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s.%(msecs)03dZ [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stdout
    )
    # websockets logs every frame at DEBUG and handshakes at INFO
    logging.getLogger("websockets").setLevel(logging.WARNING)
