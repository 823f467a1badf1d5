import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("PTX_LOG_FILE", "/tmp/ptx_workload.log")


def build_logging_config(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE) -> dict:
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
            "ptx_workload": {
                "level": level,
                "handlers": handlers,
                "propagate": False,  # Don't pass harness logs up to the root logger
            },
            # Shut the log levels for libraries up
            "fastapi": {
                "level": "INFO",
                "handlers": handlers,
                "propagate": False,
            },
            "uvicorn.access": {
                "level": "WARNING",
                "handlers": handlers,
                "propagate": False,
            },
            "httpx": {
                "level": "WARNING",
                "handlers": handlers,
                "propagate": False,
            },
            "xrpl": {
                "level": "WARNING",
                "handlers": handlers,
                "propagate": False,
            },
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
    """ Apply the logging configuration. """
    logging.config.dictConfig(build_logging_config((level or LOG_LEVEL).upper(), log_file))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
