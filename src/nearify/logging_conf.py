"""Logging setup: stdout handler with the exam session id on every line."""

from __future__ import annotations

import logging
import sys

from nearify.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(session_id)s] %(message)s"


class SessionIdFilter(logging.Filter):
    """Default ``session_id`` to ``-`` for records logged outside a session."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session_id"):
            record.session_id = "-"
        return True


def configure_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(SessionIdFilter())
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    root.addHandler(handler)
