"""JSON logs on stdout, one object per line.

Every record carries the component logger name (``rfmap.spatial``, ``rfmap.db``,
...) and any context bound with ``bind_request`` such as the HTTP request id,
including records emitted from worker-pool threads on behalf of that request.
"""

import logging
import os
import sys
from typing import Optional, Union

import structlog

LOGGER_NAME = "rfmap"
SERVICE_NAME = "rfmap"

# Third-party loggers that flood stdout at INFO.
QUIET_LOGGERS = ("sqlalchemy.engine", "alembic.runtime.migration", "urllib3.connectionpool")


def resolve_level(level: Union[int, str, None] = None) -> int:
    """Numeric level from an int, a name like ``"debug"``, or ``LOG_LEVEL`` (default INFO)."""
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {level}")
    return resolved


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(level: Union[int, str, None] = None) -> int:
    numeric_level = resolve_level(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
            _add_service,
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers = [handler]
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    get_logger("logging").info("logging_configured", level=logging.getLevelName(numeric_level))
    return numeric_level


def bind_request(request_id: Optional[str], **context) -> None:
    """Replace the per-request log context; call once at the start of each request."""
    structlog.contextvars.clear_contextvars()
    if request_id:
        structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def get_logger(component: str):
    """Return a structlog logger bound to an rfmap component name."""
    return structlog.get_logger(f"{LOGGER_NAME}.{component}")
