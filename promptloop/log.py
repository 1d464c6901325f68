import logging

from rich.logging import RichHandler

from promptloop.const import LOG_LEVEL


def configure_logging(level: str = LOG_LEVEL) -> logging.Logger:
    """Installs the rich console handler on the root logger and returns the package logger."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(markup=True, rich_tracebacks=True)]
    )
    return logging.getLogger("promptloop")
