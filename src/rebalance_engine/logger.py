import logging
import sys
import json
from datetime import datetime
from typing import Optional

from rebalance_engine.context import get_current_run

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'message', 'taskName',
    'rebalance_request_id', 'user_id', 'attempt',
}


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured logging with rebalance_request_id support"""

    def __init__(self, log_format: str = 'text'):
        super().__init__()
        self.log_format = log_format

    def format(self, record):
        log_data = {
            'timestamp': datetime.now().strftime('%Y-%m-%d %H:%M:%S %Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }

        for key in ('rebalance_request_id', 'user_id', 'attempt'):
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                if isinstance(value, datetime):
                    log_data[key] = value.isoformat()
                else:
                    log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        if self.log_format == 'json':
            return json.dumps(log_data, default=str)

        base_msg = f"{log_data['timestamp']} - {log_data['logger']} - {log_data['level']} - {log_data['message']}"
        if 'rebalance_request_id' in log_data:
            base_msg += f" [rebalance_request_id={log_data['rebalance_request_id']}]"
        if 'attempt' in log_data:
            base_msg += f" [attempt={log_data['attempt']}]"
        if 'exception' in log_data:
            base_msg += f"\n{log_data['exception']}"
        return base_msg


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    if level:
        logger.setLevel(getattr(logging, level.upper()))

    # Handlers live on the root logger only, so records propagate once
    return logger


def configure_root_logger(level: str = 'INFO', log_format: str = 'text'):
    """Configure the root logger to use structured formatting for all third-party logs"""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper()))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter(log_format))
    root_logger.addHandler(console_handler)

    _configure_third_party_loggers()


def _configure_third_party_loggers():
    """Configure specific third-party library loggers with appropriate levels"""
    # Redis: INFO captures connection issues without debug noise
    logging.getLogger('redis').setLevel(logging.INFO)

    # aiohttp: WARNING reduces HTTP request/response noise
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)

    # apscheduler logs every job execution at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)


def _extract_run_properties():
    """Extract the current run's properties for logging"""
    run = get_current_run()
    if run is None:
        return {}

    properties = {
        'rebalance_request_id': run.rebalance_request_id,
        'attempt': run.attempt,
    }
    if run.user_id:
        properties['user_id'] = run.user_id
    return properties


class AppLogger:
    """Logger instance with automatic run context extraction"""

    def __init__(self, name: str):
        self.logger = setup_logger(name)

    def log_debug(self, message: str):
        """Log debug message with automatic run context from ContextVar"""
        self.logger.debug(message, extra=_extract_run_properties())

    def log_info(self, message: str):
        """Log info message with automatic run context from ContextVar"""
        self.logger.info(message, extra=_extract_run_properties())

    def log_warning(self, message: str):
        """Log warning message with automatic run context from ContextVar"""
        self.logger.warning(message, extra=_extract_run_properties())

    def log_error(self, message: str, exc_info: bool = False):
        """Log error message with automatic run context from ContextVar"""
        self.logger.error(message, extra=_extract_run_properties(), exc_info=exc_info)
