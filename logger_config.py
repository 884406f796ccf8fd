"""Application-wide logging configuration."""

import logging

from rich.logging import RichHandler

from settings import settings


def setup_logging() -> None:
    """Configures the root logger with a single rich handler."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    rich_handler = RichHandler(
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
        tracebacks_word_wrap=True,
    )

    # Replace rather than stack handlers when the app is built more than once
    root_logger.handlers = [rich_handler]

    # Suppress verbose logging from libraries
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
