"""
Logging setup shared by the services.

Every module logs through ``logging.getLogger(__name__)``; authorization
denials go to ``campusvote.audit``. ``configure_logging()`` is called once
from each service's lifespan.
"""
import os
import logging
import logging.config

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

HEALTH_PATHS = ("/health",)


class HealthEndpointFilter(logging.Filter):
    """Drop successful health-check lines from the access log."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if any(f"{path} " in message for path in HEALTH_PATHS):
            return '" 200' not in message
        return True


def logging_config(level: str = LOG_LEVEL) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "health_endpoint": {
                "()": HealthEndpointFilter,
            },
        },
        "formatters": {
            "default": {
                "format": "[{asctime}] {levelname} {name}: {message}",
                "style": "{",
            },
            "access": {
                "format": "%(message)s",
            },
        },
        "handlers": {
            "stderr": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
            "access": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "filters": ["health_endpoint"],
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "uvicorn.access": {
                "handlers": ["access"],
                "level": "INFO",
                "propagate": False,
            },
            "campusvote.audit": {
                "handlers": ["stderr"],
                "level": "INFO",
                "propagate": False,
            },
        },
        "root": {
            "handlers": ["stderr"],
            "level": level.upper(),
        },
    }


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.config.dictConfig(logging_config(level))
