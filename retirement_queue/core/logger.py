"""
Logging setup.

One stream handler on the root logger, configured once. Records carry the
request correlation id when the correlation middleware put one on them.
"""
import logging
import sys

from retirement_queue.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(correlation_id)s | %(message)s"


class CorrelationFilter(logging.Filter):
    """Guarantee every record has a correlation_id attribute."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


def setup_logging(level: str | None = None) -> logging.Logger:
    root = logging.getLogger()
    if not any(getattr(h, "_retirement_queue", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(CorrelationFilter())
        handler._retirement_queue = True
        root.addHandler(handler)
    root.setLevel((level or settings.LOG_LEVEL).upper())
    return logging.getLogger("retirement_queue")


logger = setup_logging()
