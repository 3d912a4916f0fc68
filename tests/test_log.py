import logging

import pytest

from payment_queue.log import setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


def test_setup_logging_writes_to_file(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "worker.log"
    setup_logging("DEBUG", log_file=str(log_file))

    logging.getLogger("payment_queue.test").info("Message acknowledged from queue %s", "payment.processing")
    for handler in restore_root_logger.handlers:
        handler.flush()

    assert restore_root_logger.level == logging.DEBUG
    assert "Message acknowledged from queue payment.processing" in log_file.read_text()
    assert logging.getLogger("aiormq").level == logging.WARNING


def test_setup_logging_unknown_level_falls_back_to_info(restore_root_logger):
    setup_logging("chatty")
    assert restore_root_logger.level == logging.INFO
    assert len(restore_root_logger.handlers) == 1
