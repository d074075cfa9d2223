"""Process-wide logging setup shared by the API and the dispatch worker."""
import logging.config

from .config import settings


def configure_logging(level: str | None = None) -> None:
    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'default': {
                'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
            },
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'default',
            }
        },
        'root': {
            'handlers': ['console'],
            'level': (level or settings.LOG_LEVEL).upper(),
        },
    })
