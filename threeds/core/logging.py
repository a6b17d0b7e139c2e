"""Structured logging with JSON support and card data redaction."""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

import structlog
from pythonjsonlogger import jsonlogger

from .config import get_settings


def setup_logging() -> None:
    """Configure structured logging with JSON support for cloud environments."""
    settings = get_settings()

    # Set log level
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.json_logs:
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S"
        )
        renderer = structlog.stdlib.ProcessorFormatter.wrap_for_formatter
    else:
        # Human-readable console logging for local development
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        )
        renderer = structlog.dev.ConsoleRenderer()

    handlers: List[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = handlers

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            RedactSensitiveData(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class RedactSensitiveData:
    """Processor to redact card data and secrets from logs."""

    SENSITIVE_KEYS = {
        "password",
        "secret",
        "token",
        "api_key",
        "card_number",
        "cardnumber",
        "acct_number",
        "acctnumber",
        "cvv",
        "cvc",
        "expiry",
        "browser_info",
        "browserinfo",
        "fingerprint_payload",
    }

    # Masked values are safe to log as-is
    SAFE_SUFFIXES = ("_mask",)

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Redact sensitive fields in log events."""
        return self._redact_dict(event_dict)

    def _is_sensitive(self, key: str) -> bool:
        lowered = key.lower()
        if lowered.endswith(self.SAFE_SUFFIXES):
            return False
        return any(sensitive in lowered for sensitive in self.SENSITIVE_KEYS)

    def _redact_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively redact sensitive keys in a dictionary."""
        redacted = {}
        for key, value in data.items():
            if isinstance(key, str) and self._is_sensitive(key):
                redacted[key] = "***REDACTED***"
            elif isinstance(value, dict):
                redacted[key] = self._redact_dict(value)
            elif isinstance(value, list):
                redacted[key] = [
                    self._redact_dict(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                redacted[key] = value
        return redacted


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
