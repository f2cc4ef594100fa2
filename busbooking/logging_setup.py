import logging
import sys
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger import jsonlogger

from busbooking.config import settings

# set per HTTP request by the trace middleware and per celery sweep run
TRACE_ID_CTX: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

# chatty third-party loggers kept at WARNING unless DEBUG is on
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "aiosqlite")


class TraceIdFilter(logging.Filter):
    def filter(self, record):
        record.trace_id = TRACE_ID_CTX.get(None)
        return True


def build_formatter() -> logging.Formatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s %(trace_id)s",
        rename_fields={"levelname": "level", "name": "logger"},
        static_fields={"app": settings.APP_NAME},
    )


def setup_logging(level: Optional[int] = None, **kwargs):
    """Route the root logger to stdout as JSON lines.

    Also connected to celery's setup_logging signal, hence the **kwargs.
    """
    if level is None:
        level = logging.DEBUG if settings.DEBUG else logging.INFO
    root = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter())
    handler.addFilter(TraceIdFilter())
    root.setLevel(level)
    root.handlers = []
    root.addHandler(handler)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(level if settings.DEBUG else logging.WARNING)
