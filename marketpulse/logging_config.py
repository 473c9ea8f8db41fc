"""Structured logging: readable console output plus JSON files for Loki."""

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from marketpulse.config import settings

JSON_FORMAT = "%(timestamp)s %(level)s %(name)s %(message)s"
LOG_FILE_BYTES = 20 * 1024 * 1024
LOG_FILE_BACKUPS = 5


class MarketPulseJsonFormatter(jsonlogger.JsonFormatter):
    """JSON records with UTC timestamp, source location and process role."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        if record.funcName:
            log_record['function'] = record.funcName
        log_record['pid'] = record.process


class RoleFilter(logging.Filter):
    """Stamps every record with the process role ("api" or "worker")."""

    def __init__(self, role: str):
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'role'):
            record.role = self.role
        return True


def _json_file_handler(path: Path, level: int) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=LOG_FILE_BYTES, backupCount=LOG_FILE_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(MarketPulseJsonFormatter(JSON_FORMAT))
    return handler


def setup_logging(base_dir: str | Path | None = None, role: Optional[str] = None):
    """Configure root logging for an API or worker process.

    Writes human-readable lines to stdout, every record as JSON to
    ``logs/app.log`` and errors again to ``logs/error.log``.

    Args:
        base_dir: Directory that holds logs/ (defaults to the working directory)
        role: Process role added to every record and to the console prefix
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    prefix = f"[{role}] " if role else ""
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG)
    console.setFormatter(
        logging.Formatter(f"%(asctime)s - {prefix}%(name)s - %(levelname)s - %(message)s")
    )

    handlers = [
        console,
        _json_file_handler(logs_dir / "app.log", logging.DEBUG),
        _json_file_handler(logs_dir / "error.log", logging.ERROR),
    ]
    for handler in handlers:
        if role:
            handler.addFilter(RoleFilter(role))
        root_logger.addHandler(handler)

    # redis-py logs every reconnect attempt at DEBUG
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return root_logger


class ContextAdapter(logging.LoggerAdapter):
    """Merges fixed context (queue, job id, connection id) into each record's extra."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> ContextAdapter:
    """
    Get a logger that tags its records with context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Fields such as queue='alerts', job_id='alert-AAPL-1709303400000'
    """
    return ContextAdapter(logging.getLogger(name), context)
