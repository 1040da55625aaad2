import logging

from timecapsule.config import configure_logging
from timecapsule.logger import get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_component_loggers_are_children_of_the_service_logger():
    root = get_logger()
    assert root.name == "TimeCapsule"
    assert get_logger("TimeCapsule") is root

    trigger = get_logger("trigger")
    assert trigger.name == "TimeCapsule.trigger"
    assert trigger.parent is root
    assert get_logger("TimeCapsule.trigger") is trigger


def test_configure_logging_sets_root_level():
    root = logging.getLogger()
    previous = root.level
    handlers = list(root.handlers)
    try:
        configure_logging("debug")
        assert root.level == logging.DEBUG
        configure_logging("not-a-level")
        assert root.level == logging.INFO
    finally:
        root.handlers[:] = handlers
        root.setLevel(previous)
