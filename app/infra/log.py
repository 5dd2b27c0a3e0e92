from __future__ import annotations

import logging
import sys

from app.infra import settings
from app.infra.context import get_role, get_user_id

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(user_id)s/%(role)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_HANDLER_NAME = "provisioning-console"


class RequestContextFilter(logging.Filter):
    """Stamps each record with the caller of the request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.user_id = get_user_id() or "-"
        record.role = get_role() or "-"
        return True


def setup_logging(level: str | None = None) -> logging.Logger:
    logger = logging.getLogger("app")
    logger.setLevel(level or settings.LOG_LEVEL)

    if any(handler.get_name() == _HANDLER_NAME for handler in logger.handlers):
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.set_name(_HANDLER_NAME)
    console_handler.addFilter(RequestContextFilter())
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)
    logger.info("Logging configured")
    return logger
