import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/txload.log")

_QUIET = ["web3", "xrpl", "urllib3", "httpx", "uvicorn.access"]


def build_config(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE) -> dict:
    handlers = ["console", "file"] if log_file else ["console"]
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "txload": {
                "level": level,
                "handlers": handlers,
                "propagate": False,  # Don't pass 'txload' logs up to the root logger
            },
            # Shut the log levels for libraries up
            **{name: {"level": "WARNING", "handlers": handlers, "propagate": False} for name in _QUIET},
        },
        # Default for all other loggers
        "root": {
            "level": "WARNING",
            "handlers": handlers,
        },
    }
    if log_file:
        config["handlers"]["file"] = {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": log_file,
            "mode": "a",
        }
    return config


def setup_logging(level: str | None = None, log_file: str | None = LOG_FILE):
    """Apply the logging configuration."""
    logging.config.dictConfig(build_config((level or LOG_LEVEL).upper(), log_file))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
