import logging
import sys

from h2_registry.settings import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def set_logger_and_children_level(logger_instance: logging.Logger, level: int) -> None:
    """Set the level of a logger, its handlers and every child logger below it."""
    logger_instance.setLevel(level)
    for handler in logger_instance.handlers:
        handler.setLevel(level)

    if not logger_instance.name or logger_instance.name == "root":
        return

    for name in list(logging.root.manager.loggerDict):
        if name.startswith(logger_instance.name + "."):
            child = logging.getLogger(name)
            child.setLevel(level)
            for handler in child.handlers:
                handler.setLevel(level)


def setup_logger(name: str = "h2_registry", level: str | None = None) -> logging.Logger:
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    app_logger = logging.getLogger(name)
    app_logger.setLevel(log_level)

    if not app_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        app_logger.addHandler(handler)

    return app_logger


logger = setup_logger()
