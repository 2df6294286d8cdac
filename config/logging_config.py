"""
Centralized logging configuration for the crypto assistant.

Log records are rendered as single-line JSON documents so that request-scoped fields such as the
session identifier and the orchestration stage can be filtered on in any log aggregator. The
module exposes a formatter, a helper that builds a context-carrying logger adapter, and the
function that installs console and rotating-file handlers on the root logger.
"""

import logging
import logging.handlers
import sys
import json
from pathlib import Path
from typing import Any, Dict, Optional

CONTEXT_FIELDS = ('session_id', 'stage')


class StructuredLogFormatter(logging.Formatter):
    """
    Formatter that renders each record as a JSON object.

    Features:
    - Includes session_id and stage if present in extra fields
    - Merges any `extra_fields` mapping attached to the record
    - Preserves standard log fields (timestamp, level, logger, message)
    """

    def format(self, record):
        log_data: Dict[str, Any] = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_logger(name: str, **context: Any) -> logging.LoggerAdapter:
    """
    Get a logger adapter that stamps every record with request context.

    A new adapter is returned per call, so concurrent requests never share mutable context.

    Args:
        name (str): Logger name (usually __name__)
        **context: Context fields such as session_id or stage

    Returns:
        logging.LoggerAdapter: Adapter carrying the given context
    """
    extra = {field: None for field in CONTEXT_FIELDS}
    extra.update(context)
    return logging.LoggerAdapter(logging.getLogger(name), extra)


def setup_app_logging(config: Optional[dict] = None, default_level=logging.INFO) -> None:
    """
    Set up logging for the entire application.

    Args:
        config (dict, optional): Logging settings. Expected keys:
            - 'level': log level name (e.g., "DEBUG", "INFO").
            - 'file_path': path of the rotating log file; empty disables file logging.
            - 'max_bytes': max size of the log file before rotation.
            - 'backup_count': number of rotated files to keep.
        default_level (int, optional): Level used when the configured one is invalid.
    """
    if config is None:
        config = {}

    log_level_str = str(config.get('level', logging.getLevelName(default_level))).upper()
    numeric_log_level = getattr(logging, log_level_str, default_level)
    if not isinstance(numeric_log_level, int):
        print(f"Warning: Invalid log level string '{log_level_str}'. Using default level.", file=sys.stderr)
        numeric_log_level = default_level

    formatter = StructuredLogFormatter(datefmt=config.get('date_format', DEFAULT_LOG_DATE_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_log_level)

    if root_logger.hasHandlers():
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_file_path = config.get('file_path')
    if log_file_path:
        try:
            Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file_path,
                maxBytes=int(config.get('max_bytes', 5 * 1024 * 1024)),
                backupCount=int(config.get('backup_count', 3)),
                encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Error setting up file logging to {log_file_path}: {e}. File logging will be disabled.", file=sys.stderr)

    logging.getLogger("LoggingConfig").info("Application logging setup complete. Level: %s", log_level_str)
