"""
Logger utility - Configures application logging.

Provider keys and bearer tokens travel in request headers, error bodies and
exception messages, so every handler passes records through a redacting
filter before anything reaches the console or a log file.
"""

import logging
import logging.handlers
import os
import re
from pathlib import Path
from typing import Dict, Mapping

REDACTED = "***REDACTED***"

# Header names whose values are credentials
SENSITIVE_HEADERS = {"authorization", "x-api-key", "x-goog-api-key", "api-key", "cookie"}

# Loggers that report every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")

SECRET_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(r"\b(sk-(?:ant-)?)[A-Za-z0-9_-]{8,}"),
    re.compile(r"\b(gsk_)[A-Za-z0-9]{8,}"),
    re.compile(r"\b(AIza)[A-Za-z0-9_-]{20,}"),
    re.compile(r"\b(ya29\.)[A-Za-z0-9._-]+"),
    re.compile(r"([?&]key=)[^&\s]+"),
]

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'


def redact_secrets(text: str) -> str:
    """Mask anything that looks like a provider key or access token."""
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
    return text


def sanitize_headers_for_log(headers: Mapping[str, str]) -> Dict[str, str]:
    """Copy of ``headers`` with credential values masked."""
    return {
        name: REDACTED if name.lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


class CredentialRedactingFilter(logging.Filter):
    """Rewrites the rendered message of each record with secrets masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _rotating_file_handler(path: str, max_bytes: int, backups: int, level: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def setup_logging(log_level: str = "INFO", log_dir: str = "logs", console_level: str = "WARNING"):
    """Setup application logging.

    The console only gets warnings by default so log lines do not interleave
    with the revealed dialogue; ``amadeus.log`` gets everything at
    ``log_level`` and ``errors.log`` only errors.
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, console_level.upper()))
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    handlers = [
        console_handler,
        _rotating_file_handler(os.path.join(log_dir, 'amadeus.log'), 10*1024*1024, 5, level),
        _rotating_file_handler(os.path.join(log_dir, 'errors.log'), 5*1024*1024, 3, logging.ERROR),
    ]

    redactor = CredentialRedactingFilter()
    for handler in handlers:
        handler.addFilter(redactor)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info("Logging configured successfully")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)
