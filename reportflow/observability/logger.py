"""
Structured logging for the requester and worker services.

Every module logs through a child of the "reportflow" logger; the CLI
configures that package logger once (JSON or plain text on stdout) and the
children propagate to it. Handlers pass request ids, topics and message ids
as ``extra=`` fields, which the JSON formatter emits as top-level keys.
"""
import logging
import sys
import time

from pythonjsonlogger import jsonlogger

PACKAGE_LOGGER = "reportflow"

JSON_FORMAT = "%(timestamp)s %(level)s %(logger)s %(module)s %(function)s %(message)s"
TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s - %(message)s"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding timestamp, level, logger, module, function,
    process and thread ids to every record.
    """

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = log_record.get("timestamp") or self.formatTime(record, self.datefmt)
        log_record["level"] = (log_record.get("level") or record.levelname).upper()
        log_record["logger"] = record.name
        log_record["module"] = record.module
        log_record["function"] = record.funcName
        log_record["process_id"] = record.process
        log_record["thread_id"] = record.thread


def configure_logging(level: str = "INFO", format_type: str = "json") -> logging.Logger:
    """
    Attach a single stdout handler to the package logger.

    Calling it again replaces the handler, so the CLI can reconfigure after
    loading settings without duplicating output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown names mean INFO)
        format_type: "json" for structured output, "text" for local development

    Returns:
        The configured package logger
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    if format_type == "json":
        formatter: logging.Formatter = CustomJsonFormatter(fmt=JSON_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    else:
        formatter = logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(log_level)
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.propagate = False
    return package_logger


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """Logger for a module; pass ``__name__`` from inside the package."""
    return logging.getLogger(name)


class log_operation:
    """
    Context manager that logs start, completion and failure of an operation
    with its duration. Exceptions are logged and re-raised.

    Usage:
        with log_operation("Sweeping stale pending requests", logger=logger, cutoff=cutoff):
            ...
    """

    def __init__(self, operation_name: str, logger: logging.Logger | None = None, **extra_fields):
        self.operation_name = operation_name
        self.logger = logger or get_logger()
        self.extra_fields = extra_fields
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.info(
            f"Starting: {self.operation_name}",
            extra={"operation": self.operation_name, **self.extra_fields}
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        extra = {
            "operation": self.operation_name,
            "duration_seconds": round(time.monotonic() - self.start_time, 3),
            **self.extra_fields,
        }

        if exc_type is None:
            self.logger.info(f"Completed: {self.operation_name}", extra={**extra, "status": "success"})
        else:
            self.logger.error(
                f"Failed: {self.operation_name}",
                extra={
                    **extra,
                    "status": "error",
                    "error_type": exc_type.__name__,
                    "error_message": str(exc_val),
                },
                exc_info=True
            )
        return False
