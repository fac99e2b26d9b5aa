"""
Logging configuration
"""

import json
import logging
import sys
from typing import Optional

from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class ErrorContextFormatter(logging.Formatter):
    """
    Appends the structured context of pipeline failures.

    Failures are logged with extra={"error_context": exc.to_dict()}; the
    context (pipeline_id, run_id, step, ...) is rendered after the message.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        error_context = getattr(record, "error_context", None)
        if error_context:
            context = error_context.get("context", {}) if isinstance(error_context, dict) else error_context
            message += f" | context={json.dumps(context, default=str, sort_keys=True)}"
        return message


def setup_logging(level: Optional[str] = None):
    """Configure application logging"""

    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ErrorContextFormatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    logging.basicConfig(level=log_level, handlers=[handler])

    # Quiet chatty libraries
    for name in ("sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")
