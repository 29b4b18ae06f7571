# utils/logging_config.py

import logging
import logging.handlers
from pathlib import Path
import json
from datetime import datetime
from typing import Optional


def log_operation(logger: logging.Logger, operation: str, **kwargs):
    """Log structured operation data as a single JSON message"""
    data = {
        'operation': operation,
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }
    logger.info(json.dumps(data, default=str))


class CustomLogger:
    """
    Enhanced logging with structured output

    Handlers are attached to the logger named `logger_name` (the root
    logger by default) so that every module-level logger in the
    application shares them.
    """

    def __init__(self, name: str, log_dir: str = "logs", level: str = "INFO",
                 logger_name: Optional[str] = None):
        self.name = name
        self.level = getattr(logging, level.upper(), logging.INFO)
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.logger = self._setup_logger(logger_name)

    def _setup_logger(self, logger_name: Optional[str]) -> logging.Logger:
        """Setup logger with multiple handlers"""
        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.DEBUG)

        # Replace handlers from an earlier setup instead of duplicating them
        for handler in list(logger.handlers):
            if getattr(handler, '_custom_logger', False):
                logger.removeHandler(handler)
                handler.close()

        # Console handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.level)
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        console_handler.setFormatter(console_formatter)

        # File handler (rotating)
        file_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / f"{self.name}.log",
            maxBytes=10*1024*1024,  # 10 MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        )
        file_handler.setFormatter(file_formatter)

        # JSON handler for structured logs
        json_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / f"{self.name}_structured.json",
            maxBytes=10*1024*1024,
            backupCount=5
        )
        json_handler.setLevel(self.level)
        json_handler.setFormatter(JSONFormatter())

        for handler in (console_handler, file_handler, json_handler):
            handler._custom_logger = True
            logger.addHandler(handler)

        return logger

    def log_operation(self, operation: str, **kwargs):
        """Log structured operation data"""
        log_operation(self.logger, operation, **kwargs)


class JSONFormatter(logging.Formatter):
    """Format logs as JSON"""

    def format(self, record):
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)
