"""Structured JSON logging for the custody policy service."""

import json
import logging
import logging.config
from datetime import datetime, timezone

from custody_policy.validation import mask_sensitive

# Extra fields whose values are credentials and must never be logged in clear
SENSITIVE_KEYS = {"api_key", "api_secret", "secret", "token", "authorization", "signature"}


class JsonFormatter(logging.Formatter):
    """One JSON object per log line.

    Standard fields:
        ts: ISO-8601 UTC timestamp
        level: DEBUG / INFO / WARNING / ERROR / CRITICAL
        logger: logger name
        msg: formatted message
        exc: exception traceback (only when an exception is present)

    Keys passed via ``extra=`` are merged into the top-level object; values
    under SENSITIVE_KEYS are masked.
    """

    _skip = logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {
        "message", "asctime",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in self._skip or key.startswith("_"):
                continue
            if key.lower() in SENSITIVE_KEYS and isinstance(value, str):
                value = mask_sensitive(value)
            payload[key] = value

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def logging_config(level: str = "INFO") -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "custody_policy.logging_setup.JsonFormatter",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},   # MetricsMiddleware already counts requests
            "httpx": {"level": "WARNING"},            # the client logs its own requests
        },
    }


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(logging_config(level))
