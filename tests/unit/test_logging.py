"""
Unit tests for logging setup (dirbackup/__init__.py).
"""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from dirbackup import configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_configure_logging_with_file(tmp_path, restore_root_logger):
    log_file = tmp_path / 'logs' / 'dirbackup.log'

    configure_logging('DEBUG', str(log_file))
    logging.getLogger('dirbackup.test').debug('hello from test')

    root = restore_root_logger
    assert root.level == logging.DEBUG
    assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
    for handler in root.handlers:
        handler.flush()
    assert 'hello from test' in log_file.read_text()


def test_configure_logging_console_only(restore_root_logger):
    configure_logging('warning')

    root = restore_root_logger
    assert root.level == logging.WARNING
    assert not any(isinstance(h, RotatingFileHandler) for h in root.handlers)


def test_configure_logging_invalid_level(restore_root_logger):
    with pytest.raises(ValueError, match="Invalid log level"):
        configure_logging('LOUD')
