"""Unit tests for conveyor logging module."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator

import pytest

from conveyor.core.logging import (
    ColoredFormatter,
    configure_logging,
    get_logger,
    set_default_level,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_default_level() -> Iterator[None]:
    """Save and restore the module-level _default_level after each test."""
    from conveyor.core import logging as conveyor_logging

    original = conveyor_logging._default_level
    yield
    set_default_level(original)


def _unique() -> str:
    return f'test_{uuid.uuid4().hex[:8]}'


class TestSetDefaultLevel:
    def test_changes_module_variable(self) -> None:
        from conveyor.core import logging as conveyor_logging

        set_default_level(logging.DEBUG)
        assert conveyor_logging._default_level == logging.DEBUG

    def test_new_logger_uses_default_level(self) -> None:
        set_default_level(logging.WARNING)
        logger = get_logger(_unique())
        assert logger.level == logging.WARNING
        for handler in logger.handlers:
            assert handler.level == logging.WARNING


class TestGetLogger:
    def test_namespaced_under_conveyor(self) -> None:
        name = _unique()
        assert get_logger(name).name == f'conveyor.{name}'

    def test_single_handler_on_repeat_calls(self) -> None:
        name = _unique()
        first = get_logger(name)
        second = get_logger(name)
        assert first is second
        assert len(second.handlers) == 1
        assert second.propagate is False


class TestConfigureLogging:
    def test_updates_existing_loggers(self) -> None:
        set_default_level(logging.INFO)
        logger = get_logger(_unique())

        applied = configure_logging('debug')

        assert applied == logging.DEBUG
        assert logger.level == logging.DEBUG
        assert all(h.level == logging.DEBUG for h in logger.handlers)

    def test_unknown_level_falls_back_to_info(self) -> None:
        assert configure_logging('chatty') == logging.INFO

    def test_leaves_foreign_loggers_alone(self) -> None:
        foreign = logging.getLogger(f'other_{uuid.uuid4().hex[:8]}')
        foreign.setLevel(logging.ERROR)
        configure_logging('DEBUG')
        assert foreign.level == logging.ERROR


class TestColoredFormatter:
    def _record(self, name: str = 'conveyor.worker', msg: str = 'hello') -> logging.LogRecord:
        return logging.LogRecord(name, logging.WARNING, __file__, 1, msg, None, None)

    def test_plain_layout(self) -> None:
        line = ColoredFormatter(use_colors=False).format(self._record())
        assert '[worker]' in line
        assert '[WARNING]' in line
        assert line.endswith('hello')
        assert '\033[' not in line

    def test_colored_layout(self) -> None:
        line = ColoredFormatter(use_colors=True).format(self._record())
        assert '\033[93m' in line  # yellow for WARNING

    def test_includes_exception(self) -> None:
        try:
            raise RuntimeError('kaput')
        except RuntimeError:
            import sys

            record = logging.LogRecord(
                'conveyor.worker', logging.ERROR, __file__, 1, 'failed', None, sys.exc_info()
            )
        line = ColoredFormatter(use_colors=False).format(record)
        assert 'RuntimeError: kaput' in line
