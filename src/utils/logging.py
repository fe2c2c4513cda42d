"""
Logging utility module for Cafe Sync.

Provides JSON-structured logging with consumer instance ID propagation so every
line written while a change-stream consumer runs can be attributed to it.
"""

import json
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variable for instance ID propagation
_instance_id: ContextVar[Optional[str]] = ContextVar('instance_id', default=None)

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(
    logging.LogRecord('', 0, '', 0, '', (), None).__dict__.keys()
) | {'message', 'asctime'}


def get_instance_id() -> Optional[str]:
    """Get the consumer instance ID bound to the current context."""
    return _instance_id.get()


def bind_instance_id(instance_id: Optional[str]) -> None:
    """Bind a consumer instance ID to the current context."""
    _instance_id.set(instance_id)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        instance_id = get_instance_id()
        if instance_id:
            log_data['instance_id'] = instance_id

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Fields passed through ``extra={...}``
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(settings=None) -> logging.Logger:
    """Install the service log handler on the root logger.

    Args:
        settings: ``LoggingSettings`` instance; loaded from the environment when omitted

    Returns:
        The root logger
    """
    if settings is None:
        from config.settings import get_settings
        settings = get_settings().logging

    root = logging.getLogger()
    root.setLevel(settings.level)

    for handler in list(root.handlers):
        if getattr(handler, '_cafe_sync_handler', False):
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    if settings.json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s [%(name)s] %(message)s'
        ))
    handler._cafe_sync_handler = True
    root.addHandler(handler)

    return root


class InstanceContext:
    """Context manager binding a consumer instance ID for the duration of a block."""

    def __init__(self, instance_id: Optional[str]):
        self.instance_id = instance_id
        self._token = None

    def __enter__(self) -> Optional[str]:
        self._token = _instance_id.set(self.instance_id)
        return self.instance_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _instance_id.reset(self._token)
