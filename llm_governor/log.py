"""Logging configuration for LLM Governor."""

import logging
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

BASE_LOG_FORMAT = (
    "%(asctime)s %(levelname)8s %(message)s (%(name)s@%(filename)s:%(lineno)d)"
)


def setup_logging(
    level: int = logging.INFO,
    use_rich: bool = True,
    format_string: Optional[str] = None,
) -> None:
    """Configure root logging for the governor.

    Args:
        level: Logging level to use
        use_rich: Render console output with rich (plain text otherwise)
        format_string: Custom format string for plain-text output
    """
    if use_rich:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            log_time_format="%m-%d %H:%M:%S",
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(format_string or BASE_LOG_FORMAT, datefmt="%m-%d %H:%M:%S")
        )

    logging.basicConfig(
        level=level,
        handlers=[handler],
        force=True,
    )

    # Keep transport chatter out of governor logs
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
