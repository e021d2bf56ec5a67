"""
Centralized Logging Management for the document broker.

All sync, publication and webhook components log through the "cpsync"
logger hierarchy. Loggers are created at import time with a stdout default;
the orchestrator later calls ``LoggingManager().configure(...)`` with the
level and file from the broker's YAML config, which re-applies the handlers
for the whole hierarchy.

Every record is one JSON object per line. Pass ``extra={'details': {...}}``
to attach object ids, container ids or feed types to a record.
"""

import logging
import sys
import json
import threading
from typing import Optional

ROOT_LOGGER_NAME = "cpsync"

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("msal", "urllib3", "azure.core.pipeline.policies.http_logging_policy")


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``details`` and the environment are carried through."""

    def __init__(self, environment: Optional[str] = None):
        super().__init__()
        self.environment = environment

    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if self.environment:
            log_record["environment"] = self.environment
        if record.exc_info:
            log_record['exc_info'] = self.formatException(record.exc_info)
            log_record['location'] = f"{record.module}:{record.lineno}"
        details = getattr(record, 'details', None)
        if details is not None:
            log_record['details'] = details
        return json.dumps(log_record, default=str, ensure_ascii=False)


class LoggingManager:
    _instance = None
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super(LoggingManager, cls).__new__(cls)
                cls._instance._configured = False
        return cls._instance

    def __init__(self):
        if not self._configured:
            self.configure()

    def configure(self, log_level: str = "INFO", log_file: Optional[str] = None,
                  environment: Optional[str] = None) -> None:
        """Replace the hierarchy's handlers; safe to call again with new settings."""
        self.log_level = log_level.upper()
        self.log_file = log_file
        self.environment = environment

        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(self.log_level)
        root.propagate = False
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        formatter = JsonFormatter(environment)
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        self._configured = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton and its handlers."""
        root = logging.getLogger(ROOT_LOGGER_NAME)
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        cls._instance = None

    @staticmethod
    def get_logger(name: str) -> logging.Logger:
        LoggingManager()
        return logging.getLogger(name)


def get_logger(name: str) -> logging.Logger:
    return LoggingManager.get_logger(name)
