import logging

from rich.logging import RichHandler

from cloudvault.utils.console import err_console

LOG_FORMAT = "%(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Route the ``cloudvault`` logger tree through rich on stderr."""
    root = logging.getLogger("cloudvault")
    root.setLevel(level.upper())

    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    # apscheduler is chatty at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
