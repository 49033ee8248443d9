"""
Logging Service for the Claim Monitor
Provides structured logging with JSON format and job correlation context.
"""

import json
import logging
import logging.config
import sys
import traceback
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Any, Optional
from contextvars import ContextVar
from pathlib import Path

# Context variables for job correlation
job_id_var: ContextVar[Optional[str]] = ContextVar('job_id', default=None)
job_kind_var: ContextVar[Optional[str]] = ContextVar('job_kind', default=None)
channel_id_var: ContextVar[Optional[str]] = ContextVar('channel_id', default=None)

RESERVED_RECORD_FIELDS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'message', 'asctime', 'taskName',
}


def _context() -> Dict[str, str]:
    context = {}
    if job_id_var.get():
        context['job_id'] = job_id_var.get()
    if job_kind_var.get():
        context['job_kind'] = job_kind_var.get()
    if channel_id_var.get():
        context['channel_id'] = channel_id_var.get()
    return context


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        log_data.update(_context())

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in RESERVED_RECORD_FIELDS and key not in log_data
        }
        if extra_fields:
            log_data['extra'] = extra_fields

        return json.dumps(log_data, default=str, ensure_ascii=False)


class MonitorLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that attaches job context to every record"""

    def __init__(self, logger: logging.Logger, extra: Dict[str, Any] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Process log message and add extra context"""
        extra = kwargs.get('extra', {})
        if self.extra:
            extra.update(self.extra)
        for key, value in _context().items():
            extra.setdefault(key, value)
        kwargs['extra'] = extra
        return msg, kwargs

    def log_job_event(self, level: int, job_id: str, kind: str, status: str,
                      message: str = "", **kwargs):
        """Log job lifecycle events"""
        extra = {
            'event_type': 'job',
            'job_id': job_id,
            'job_kind': kind,
            'status': status,
            **kwargs
        }
        self.log(level, message, extra=extra)

    def log_sync_event(self, level: int, channel_id: str, sync_type: str, status: str,
                       message: str = "", **kwargs):
        """Log channel and claim sync events"""
        extra = {
            'event_type': 'sync',
            'channel_id': channel_id,
            'sync_type': sync_type,
            'status': status,
            **kwargs
        }
        self.log(level, message, extra=extra)


_loggers: Dict[str, MonitorLoggerAdapter] = {}


def configure_logging(level: str = "INFO", json_output: bool = True, log_dir: Optional[str] = None) -> None:
    """Setup logging configuration for the worker process"""
    handlers: Dict[str, Dict[str, Any]] = {
        'console': {
            'class': 'logging.StreamHandler',
            'level': level,
            'formatter': 'json' if json_output else 'simple',
            'stream': sys.stdout
        }
    }

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        handlers['file_all'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'level': 'DEBUG',
            'formatter': 'json',
            'filename': str(path / 'monitor.log'),
            'maxBytes': 100 * 1024 * 1024,  # 100MB
            'backupCount': 10
        }
        handlers['file_error'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'level': 'ERROR',
            'formatter': 'json',
            'filename': str(path / 'error.log'),
            'maxBytes': 50 * 1024 * 1024,  # 50MB
            'backupCount': 5
        }

    config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'json': {
                '()': JSONFormatter,
            },
            'simple': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            }
        },
        'handlers': handlers,
        'loggers': {
            'sqlalchemy': {'level': 'WARNING'},
            'httpx': {'level': 'WARNING'},
        },
        'root': {
            'level': level,
            'handlers': list(handlers)
        }
    }

    logging.config.dictConfig(config)


def get_logger(name: str, extra: Dict[str, Any] = None) -> MonitorLoggerAdapter:
    """Get or create a logger with the given name"""
    if name not in _loggers:
        base_logger = logging.getLogger(f"claim_monitor.{name}")
        _loggers[name] = MonitorLoggerAdapter(base_logger, extra)
    return _loggers[name]


@contextmanager
def job_context(job_id: str, kind: str, channel_id: Optional[str] = None):
    """Bind job identifiers to every log record emitted inside the block"""
    tokens = [job_id_var.set(job_id), job_kind_var.set(kind)]
    channel_token = channel_id_var.set(channel_id) if channel_id else None
    try:
        yield
    finally:
        if channel_token is not None:
            channel_id_var.reset(channel_token)
        job_kind_var.reset(tokens[1])
        job_id_var.reset(tokens[0])
