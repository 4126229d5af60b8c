"""Process-wide logging configuration.

Modules log through ``logging.getLogger(__name__)``; this installs a single
rich console handler on the root logger. Safe to call more than once: only the
first call takes effect.
"""

import logging

from rich.logging import RichHandler

_configured = False

LOG_FORMAT = "%(name)s: %(message)s"
LOG_DATE_FORMAT = "[%Y-%m-%d %H:%M:%S]"


def configure_logging(level: int | str = logging.INFO) -> None:
    global _configured
    if _configured:
        return
    _configured = True

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = RichHandler(rich_tracebacks=True, show_path=False, log_time_format=LOG_DATE_FORMAT)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)
