import logging.config

from .config import settings


def configure_logging(level: str = None) -> None:
    """Configure root logging for the API process."""
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "root": {
            "level": (level or settings.LOG_LEVEL).upper(),
            "handlers": ["console"],
        },
        # requests/urllib3 are chatty at DEBUG
        "loggers": {
            "urllib3": {"level": "WARNING"},
        },
    })
