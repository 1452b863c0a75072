import logging
from pathlib import Path

import pytest

from xset_listener.logging import configure_logging


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    paho_level = logging.getLogger("paho").level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("paho").setLevel(paho_level)


def test_configure_logging_writes_file(tmp_path: Path, restore_root_logging) -> None:
    log_path = tmp_path / "logs" / "bridge.log"
    configure_logging("debug", log_path=log_path)

    logging.getLogger("xset_listener.test").info("hello")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert logging.getLogger().level == logging.DEBUG
    content = log_path.read_text()
    assert "| INFO | xset_listener.test | hello" in content


def test_configure_logging_quiets_paho_by_default(restore_root_logging) -> None:
    configure_logging("INFO")
    assert logging.getLogger("paho").level == logging.WARNING


def test_configure_logging_keeps_paho_when_network_logging(restore_root_logging) -> None:
    logging.getLogger("paho").setLevel(logging.NOTSET)
    configure_logging("INFO", log_network=True)
    assert logging.getLogger("paho").level == logging.NOTSET
