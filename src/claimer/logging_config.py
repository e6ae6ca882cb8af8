import copy
import logging
import logging.config
import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "claimer.log")

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
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": "ext://sys.stdout",
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "claimer": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file"],
            "propagate": False, # Don't pass 'claimer' logs up to the root logger
        },
        # Shut the log levels for libraries up
        "httpx": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "uvicorn.access": {
             "level": "WARNING", # Quiets the noisy access logs
             "handlers": ["console", "file"],
             "propagate": False,
        },
        "stellar_sdk": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        }
    },
    # Default for all other loggers
    "root": {
        "level": "WARNING",
        "handlers": ["console", "file"],
    },
}


def _without_file(config: dict) -> dict:
    cfg = copy.deepcopy(config)
    del cfg["handlers"]["file"]
    for logger in [*cfg["loggers"].values(), cfg["root"]]:
        logger["handlers"] = [h for h in logger["handlers"] if h != "file"]
    return cfg


def setup_logging(log_file: str | None = None, level: str | None = None) -> None:
    """Apply the logging configuration.

    The file sink is append-only. If it can't be opened the run continues
    with console output only; later write errors are reported by the logging
    module itself and never raised into the caller.
    """
    cfg = copy.deepcopy(LOGGING_CONFIG)
    if log_file:
        cfg["handlers"]["file"]["filename"] = log_file
    requested = (level or cfg["loggers"]["claimer"]["level"]).strip().upper()
    known = requested in logging.getLevelNamesMapping()
    cfg["loggers"]["claimer"]["level"] = requested if known else "INFO"
    try:
        logging.config.dictConfig(cfg)
    except (ValueError, OSError) as e:
        logging.config.dictConfig(_without_file(cfg))
        logging.getLogger("claimer").warning(
            "Failed to open log file %s, logging to console only: %s", cfg["handlers"]["file"]["filename"], e
        )
    if not known:
        logging.getLogger("claimer").warning("Unknown log level %r, using INFO", requested)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
