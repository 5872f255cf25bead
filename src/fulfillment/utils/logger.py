import logging
import os

from rich.logging import RichHandler


class CenteredFormatter(logging.Formatter):
    longest_name_length = 18  # grows as longer module names show up

    def __init__(self, fmt=None, datefmt=None, style="%", initial_width=18):
        super().__init__(fmt, datefmt, style)
        CenteredFormatter.longest_name_length = initial_width

    def format(self, record):
        # drop the package prefix, every engine logger shares it
        short_name = record.name.removeprefix("fulfillment.")
        CenteredFormatter.longest_name_length = max(
            CenteredFormatter.longest_name_length, len(short_name)
        )
        record.name = short_name.center(CenteredFormatter.longest_name_length)
        return super().format(record)


def _log_level() -> int:
    if os.getenv("DEBUG"):
        return logging.DEBUG
    level = logging.getLevelName(os.getenv("FULFILLMENT_LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def get_logger(name=None) -> logging.Logger:
    """
    Creates and returns a logger configured with RichHandler for rich output.

    Level is DEBUG when ``DEBUG`` is set, otherwise ``FULFILLMENT_LOG_LEVEL``
    (default INFO).
    """
    if name is None:
        name = "fulfillment"
    logger = logging.getLogger(name)
    log_level = _log_level()
    logger.setLevel(log_level)

    if not logger.handlers:
        formatter = CenteredFormatter("[%(name)s]  %(message)s")

        console_handler = RichHandler(
            show_time=True,
            show_level=True,
            show_path=False,
            rich_tracebacks=True,
            log_time_format="[%X]",
        )
        console_handler.setFormatter(formatter)
        console_handler.setLevel(log_level)
        logger.addHandler(console_handler)

        logger.propagate = False
        logger.debug(f"Logger for '{name}' initialized with RichHandler.")

    return logger
