"""
Logging utilities for the DockerFleet orchestrator.

Provides:
- Structured logging with key=value fields
- Correlation context (host, job, loop) carried in context variables
- Performance timing utilities
- Optional JSON output
"""
import json
import logging
import os
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Optional

# Correlation IDs (one value per thread / task)
_host_id: ContextVar[Optional[str]] = ContextVar('host_id', default=None)
_job_id: ContextVar[Optional[str]] = ContextVar('job_id', default=None)
_loop: ContextVar[Optional[str]] = ContextVar('loop', default=None)

# (human key, json key, variable)
_CORRELATION_VARS = (
    ('loop', 'loop', _loop),
    ('host', 'host_id', _host_id),
    ('job', 'job_id', _job_id),
)

VALID_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class StructuredFormatter(logging.Formatter):
    """
    Formatter that adds correlation IDs and structured fields.

    Format: [timestamp] [level] [component] correlation_ids key=value message
    """

    def __init__(self, json_output: bool = False):
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        if self.json_output:
            return self._format_json(record)
        return self._format_human(record)

    def _timestamp(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S')
        return f"{timestamp}.{int(record.msecs):03d}Z"

    def _format_human(self, record: logging.LogRecord) -> str:
        """Human-readable format with key=value pairs."""
        component = record.name.split('.')[-1]

        parts = [
            f"[{self._timestamp(record)}]",
            f"[{record.levelname}]",
            f"[{component}]"
        ]

        for name, _, var in _CORRELATION_VARS:
            value = var.get()
            if value:
                parts.append(f"{name}={value}")

        fields = getattr(record, 'fields', None)
        if isinstance(fields, dict):
            parts.extend(f"{key}={value}" for key, value in fields.items())

        parts.append(record.getMessage())

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)
        return result

    def _format_json(self, record: logging.LogRecord) -> str:
        """JSON format for machine parsing."""
        log_entry = {
            "timestamp": self._timestamp(record),
            "level": record.levelname,
            "component": record.name.split('.')[-1],
            "message": record.getMessage()
        }

        for _, json_key, var in _CORRELATION_VARS:
            value = var.get()
            if value:
                log_entry[json_key] = value

        fields = getattr(record, 'fields', None)
        if isinstance(fields, dict):
            log_entry.update(fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, separators=(',', ':'), default=str)


def get_correlation_ids() -> Dict[str, Optional[str]]:
    """Return the correlation IDs of the current context."""
    return {
        'host_id': _host_id.get(),
        'job_id': _job_id.get(),
        'loop': _loop.get(),
    }


def clear_correlation_ids() -> None:
    """Clear all correlation IDs from current context."""
    _host_id.set(None)
    _job_id.set(None)
    _loop.set(None)


@contextmanager
def correlation_context(
    host_id: Optional[str] = None,
    job_id: Optional[str] = None,
    loop: Optional[str] = None
):
    """
    Context manager for temporary correlation IDs.

    Only the IDs that are passed are changed. Previous values are restored
    on exit.

    Example:
        with correlation_context(loop="synchronizer", host_id="web-01"):
            logger.info("Syncing")  # loop=synchronizer host=web-01 Syncing
    """
    tokens = []
    for var, value in ((_host_id, host_id), (_job_id, job_id), (_loop, loop)):
        if value is not None:
            tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


@contextmanager
def log_duration(operation: str, logger: Optional[logging.Logger] = None,
                 level: int = logging.INFO, **extra_fields):
    """
    Context manager that logs duration of an operation.

    Example:
        with log_duration("sync_host", logger, host="web-01"):
            sync()
        # Logs: operation=sync_host duration_ms=1234 host=web-01
    """
    if logger is None:
        logger = logging.getLogger()

    start_time = time.monotonic()

    try:
        yield
    finally:
        duration_ms = int((time.monotonic() - start_time) * 1000)
        fields = {
            'operation': operation,
            'duration_ms': duration_ms,
            **extra_fields
        }
        logger.log(level, f"Operation completed: {operation}", extra={'fields': fields})


def log_with_fields(logger: logging.Logger, level: int, message: str, **fields):
    """
    Log a message with structured fields.

    Example:
        log_with_fields(logger, logging.WARNING, "Fallback used",
                        host="web-01", address="203.0.113.5")
    """
    logger.log(level, message, extra={'fields': fields})


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    module_levels: Optional[Dict[str, str]] = None
) -> None:
    """
    Setup logging configuration for the orchestrator.

    Args:
        level: Global log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Enable JSON output instead of human-readable
        log_file: Optional log file path (in addition to stdout)
        module_levels: Per-module log levels, e.g. {'synchronizer': 'DEBUG'}

    Environment Variables:
        DOCKERFLEET_LOG_LEVEL: Override log level
        DOCKERFLEET_LOG_JSON: Enable JSON output (1 or 0)
    """
    level = os.getenv('DOCKERFLEET_LOG_LEVEL', level).upper()
    json_output = os.getenv('DOCKERFLEET_LOG_JSON', '0') == '1' or json_output

    if level not in VALID_LEVELS:
        logging.warning(f"Invalid log level '{level}', using INFO")
        level = 'INFO'

    formatter = StructuredFormatter(json_output=json_output)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = os.path.dirname(log_file)
            if log_path and not os.path.exists(log_path):
                os.makedirs(log_path, mode=0o755)

            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            logging.info(f"Logging to file: {log_file}")
        except OSError as e:
            logging.error(f"Failed to setup file logging: {e}")

    # paramiko logs every transport event at INFO
    logging.getLogger('paramiko').setLevel(logging.WARNING)

    for module_name, module_level in (module_levels or {}).items():
        module_level_upper = module_level.upper()
        if module_level_upper in VALID_LEVELS:
            module_logger = logging.getLogger(f'orchestrator.{module_name}')
            module_logger.setLevel(getattr(logging, module_level_upper))
            logging.debug(f"Set log level for {module_name}: {module_level_upper}")
        else:
            logging.warning(f"Invalid log level for module {module_name}: {module_level}")

    logging.info(f"Logging initialized: level={level}, json={json_output}, file={log_file}")
