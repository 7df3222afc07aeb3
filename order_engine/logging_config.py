"""Process-wide logging setup for the Orders service."""
import logging

from .config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure the root logger once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)


def mask_secret(value, keep: int = 8) -> str:
    """Shorten a secret (signature, token) for log output."""
    if not value:
        return ""
    return f"{value[:keep]}..."
