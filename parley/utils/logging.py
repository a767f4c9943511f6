import logging
import sys
from typing import Optional, Union

# Client libraries underneath the provider adapters; httpx logs every request at INFO.
VENDOR_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "google_genai")


def resolve_level(level: Union[int, str, None], debug: bool = False) -> int:
    """Turn a config level name ("info", "WARNING") into a logging level; --debug wins."""
    if debug:
        return logging.DEBUG
    if isinstance(level, int):
        return level
    if not level:
        return logging.WARNING
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.WARNING


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None):
    """
    Setup logging for Parley.

    Chat text is streamed to the terminal, so request chatter from the
    vendor clients is held at WARNING unless Parley itself logs at DEBUG.
    """
    level = resolve_level(level)
    logger = logging.getLogger("parley")
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    vendor_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in VENDOR_LOGGERS:
        logging.getLogger(name).setLevel(vendor_level)

    return logger


def get_logger(name: str):
    """
    Get a logger with the given name under the 'parley' namespace.
    """
    if name.startswith("parley."):
        return logging.getLogger(name)
    return logging.getLogger(f"parley.{name}")
