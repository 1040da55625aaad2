"""Named loggers for the TimeCapsule service."""

import logging

ROOT_LOGGER_NAME = "TimeCapsule"


def get_logger(component: str | None = None) -> logging.Logger:
    """Return the service logger, or a child such as ``TimeCapsule.trigger``.

    No handlers are attached here; ``configure_logging`` sets up the root
    logger once for ``main.py`` and the ``timecapsule`` command.
    """
    if not component or component == ROOT_LOGGER_NAME:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if component.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(component)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")
