import logging
import sys

from coverscan.config import get_settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Send all records to stdout in one format at the configured level."""
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if any(getattr(handler, "_coverscan", False) for handler in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._coverscan = True
    root.addHandler(handler)

    for noisy in ("botocore", "boto3", "urllib3", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
