import logging
import sys
from pythonjsonlogger.json import JsonFormatter


def setup_logging(service_name: str = "workflow-client", level: int = logging.INFO):
    """Setup structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Called again on reload; keep a single JSON handler
    if any(isinstance(h.formatter, JsonFormatter) for h in logger.handlers):
        return logger

    logHandler = logging.StreamHandler(sys.stdout)
    formatter = JsonFormatter(
        fmt="%(timestamp)s %(service)s %(levelname)s %(name)s %(message)s"
    )
    logHandler.setFormatter(formatter)
    logger.addHandler(logHandler)

    # Add service context to all log records
    old_factory = logging.getLogRecordFactory()
    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.service = service_name
        record.timestamp = record.created
        return record
    logging.setLogRecordFactory(record_factory)

    return logger
