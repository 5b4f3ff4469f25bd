"""
Structured JSON logging configuration.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from config.settings import AppSettings, get_settings

# Attached by the orchestrator through ``extra=``
CONTEXT_FIELDS = ('task_id', 'component', 'step', 'sequence')


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for attr in CONTEXT_FIELDS:
            value = getattr(record, attr, None)
            if value:
                log_entry[attr] = value

        return json.dumps(log_entry)


def configure_logging(settings: Optional[AppSettings] = None) -> logging.Logger:
    """Configure logging for the onramp package.

    Args:
        settings: Application settings (default: get_settings()).

    Returns:
        Configured logger instance.
    """
    settings = settings or get_settings()

    logger = logging.getLogger('onramp')
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)

    if settings.log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    logger.addHandler(console_handler)

    # File handler (if configured)
    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger
