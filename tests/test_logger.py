import logging

from postcard_fulfillment.logger import configure_logging, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert get_logger().name == "PostcardFulfillment"


def test_configure_logging_reads_level(monkeypatch):
    root = logging.getLogger()
    previous_level, previous_handlers = root.level, list(root.handlers)
    try:
        monkeypatch.setenv("PF_LOG_LEVEL", "warning")
        configure_logging()
        assert root.level == logging.WARNING

        configure_logging("debug")
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1

        configure_logging("nonsense")
        assert root.level == logging.INFO
    finally:
        root.handlers = previous_handlers
        root.setLevel(previous_level)
