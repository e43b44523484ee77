import sys
from logging.config import dictConfig

from stockledger.config import settings


def setup_logging() -> None:
    level = "DEBUG" if settings.debug else settings.log_level.upper()
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "stream": sys.stdout,
                    "formatter": "default",
                },
            },
            "loggers": {
                # SQL echo is controlled by settings.debug on the engine
                "sqlalchemy.engine": {"level": "WARNING", "propagate": True},
            },
            "root": {
                "level": level,
                "handlers": ["console"],
            },
        }
    )
