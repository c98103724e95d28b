"""
Logging configuration.

WHY: Every module logs through logging.getLogger(__name__) with structured
fields passed in `extra`. This module installs one handler and stamps each
record with the current request id so a webhook delivery can be followed
through verification, the ledger and the state machine.
"""

import logging
import sys

from basketstats.middleware.request_context import get_request_context

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [request_id=%(request_id)s] %(message)s"


class RequestIdFilter(logging.Filter):
    """Inject request_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            context = get_request_context()
            record.request_id = context.request_id if context else "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """
    Install the application log handler on the root logger.

    Safe to call more than once: an existing handler installed by a previous
    call is replaced rather than duplicated.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_basketstats", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler._basketstats = True
    root.addHandler(handler)
    root.setLevel(level.upper())

    # SQL echo is controlled by DEBUG on the engine, keep the logger quiet
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
