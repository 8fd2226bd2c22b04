"""Structured logging configuration"""

import logging
import json
import os
from datetime import datetime
from typing import Any, Dict

# LogRecord attributes that are not user-supplied context
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class StructuredLogger:
    """Structured JSON logger for the analytics pipeline"""

    def __init__(self, name: str, level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))

        # Loggers are process-wide; only attach the JSON handler once
        if not any(isinstance(h.formatter, JSONFormatter) for h in self.logger.handlers):
            handler = logging.StreamHandler()
            handler.setFormatter(JSONFormatter())
            self.logger.addHandler(handler)
            self.logger.propagate = False

    def log(self, level: str, message: str, **kwargs):
        """Log structured message with keyword context"""
        exc_info = kwargs.pop("exc_info", None)
        context = {key: _jsonable(value) for key, value in kwargs.items()}
        getattr(self.logger, level.lower())(message, extra={"context": context}, exc_info=exc_info)

    def info(self, message: str, **kwargs):
        self.log("info", message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.log("warning", message, **kwargs)

    def error(self, message: str, **kwargs):
        self.log("error", message, **kwargs)

    def debug(self, message: str, **kwargs):
        self.log("debug", message, **kwargs)


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter"""

    def format(self, record):
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            log_data.update(context)

        # Context passed through plain logging calls
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key != "context" and key not in log_data:
                log_data[key] = _jsonable(value)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


def get_logger(name: str) -> StructuredLogger:
    """Get or create structured logger"""
    log_level = os.getenv("LOG_LEVEL", "INFO")
    return StructuredLogger(name, log_level)
