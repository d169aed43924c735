"""
Structured logging configuration for the offline sync service
"""
import logging
import sys
from pythonjsonlogger import jsonlogger

from .correlation import get_correlation_id


class CorrelationIdFilter(logging.Filter):
    """Fill correlation_id from context when the caller did not pass one"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id() or "-"
        return True


def setup_logging(level: str = "INFO"):
    """
    Configure structured JSON logging

    Features:
    - JSON-formatted logs for easy parsing
    - Includes timestamp, level, message, correlation_id
    - correlation_id is the request id for API calls and the cycle id
      for sync cycles
    - Outputs to stdout
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s %(correlation_id)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    root_logger.addHandler(handler)

    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger
