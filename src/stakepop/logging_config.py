import logging
import logging.config
import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/stakepop.log")

HANDLERS = ["console", "file"]


def _logger(level: str) -> dict:
    return {"level": level, "handlers": HANDLERS, "propagate": False}


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        # stdout carries the run report
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": "ext://sys.stderr",
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
            "delay": True,
        },
    },
    "loggers": {
        "stakepop": _logger(LOG_LEVEL),
        # InsufficientTargets and friends arrive through warnings.warn
        "py.warnings": _logger("WARNING"),
        # Shut the libraries up
        "substrateinterface": _logger("WARNING"),
        "httpx": _logger("WARNING"),
        "uvicorn.access": _logger("WARNING"),
    },
    "root": {
        "level": "WARNING",
        "handlers": HANDLERS,
    },
}


def setup_logging(level: str | None = None):
    """Apply the logging configuration, optionally overriding the stakepop level."""
    config = LOGGING_CONFIG
    if level:
        config = {**LOGGING_CONFIG, "loggers": {**LOGGING_CONFIG["loggers"], "stakepop": _logger(level.upper())}}
    logging.config.dictConfig(config)
    logging.captureWarnings(True)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
