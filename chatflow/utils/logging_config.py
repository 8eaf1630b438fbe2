import logging
from logging.config import dictConfig

from chatflow.utils.env_helper import env_none_or_str

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str | None = None):
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": LOG_FORMAT,
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {
                # realtime client logs every heartbeat at INFO
                "realtime": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
            "root": {
                "level": (level or env_none_or_str("LOG_LEVEL", "INFO")).upper(),
                "handlers": ["console"],
            },
        }
    )
    logging.getLogger(__name__).debug("logging configured")
