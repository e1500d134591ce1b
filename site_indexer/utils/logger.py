"""
Logging setup for the indexer and the per-site-job log adapter.
"""

import logging
import logging.handlers
import json
import sys
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from .config import LoggingConfig

# Third-party loggers that are too chatty at the indexer's level
QUIET_LOGGERS = {
    'aiohttp': logging.WARNING,
    'cassandra': logging.WARNING,
    'redis': logging.WARNING,
    'asyncio': logging.WARNING,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with the site job context as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update(getattr(record, 'job_context', {}))

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class IndexerLogAdapter(logging.LoggerAdapter):
    """Logger adapter that tags every message with the site job it belongs to."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Prefix the message with the site name and attach the job context to the record."""
        extra = kwargs.setdefault('extra', {})
        extra['job_context'] = {**self.extra, **extra.get('job_context', {})}

        site = self.extra.get('site')
        if site:
            msg = f"[{site}] {msg}"
        return msg, kwargs

    def log_page_event(self, level: int, url: str, message: str):
        self.log(level, message, extra={'job_context': {'url': url, 'event_type': 'page_event'}})

    def log_job_stat(self, stat_name: str, value: Any):
        self.info(f"Stat: {stat_name} = {value}", extra={'job_context': {
            'stat_name': stat_name,
            'stat_value': value,
            'event_type': 'job_stat'
        }})


def setup_logging(config: LoggingConfig) -> logging.Logger:
    """
    Configure the root logger: console, rotating log file and a separate
    errors.log next to it.

    Returns:
        Configured root logger
    """
    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper()))
    root_logger.handlers.clear()

    formatter = JSONFormatter() if config.json else logging.Formatter(config.format)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=50 * 1024 * 1024,  # 50MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    error_handler = logging.handlers.RotatingFileHandler(
        log_file.parent / 'errors.log',
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=3,
        encoding='utf-8'
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    root_logger.addHandler(error_handler)

    for logger_name, level in QUIET_LOGGERS.items():
        logging.getLogger(logger_name).setLevel(level)

    root_logger.info(f"Logging to {log_file} at {config.level} (json={config.json})")
    return root_logger


def get_crawler_logger(name: str, **job_context) -> IndexerLogAdapter:
    """Logger that carries site job context (e.g. site, job_id) on every record."""
    return IndexerLogAdapter(logging.getLogger(name), job_context)


def log_system_info():
    """Log system and environment information."""
    import platform
    import psutil

    logger = logging.getLogger(__name__)

    logger.info("=== SYSTEM INFORMATION ===")
    logger.info(f"Platform: {platform.platform()}")
    logger.info(f"Python version: {sys.version}")
    logger.info(f"CPU cores: {psutil.cpu_count()}")
    logger.info(f"Memory: {psutil.virtual_memory().total / 1024**3:.1f} GB")
