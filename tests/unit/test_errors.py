"""Unit tests for Rust-style error formatting and error collection."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from io import StringIO
from unittest import mock

import pytest

from conveyor.core.errors import (
    ConfigurationError,
    ConveyorError,
    ErrorCode,
    MultipleValidationErrors,
    StartupError,
    ValidationReport,
    _conveyor_excepthook,
    install_error_handler,
    raise_collected,
    uninstall_error_handler,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def _restore_excepthook() -> Iterator[None]:
    original = sys.excepthook
    yield
    sys.excepthook = original


class TestRender:
    def test_plain_render(self) -> None:
        err = ConfigurationError(
            message='submit_limit must not be looser than request_limit',
            code=ErrorCode.CONFIG_INVALID_RATE_LIMIT,
            notes=['request_limit=100/60000ms', 'submit_limit=200/60000ms'],
            help_text='lower submit_limit.limit',
        )
        text = err.render(use_colors=False)
        assert 'error[E210]: submit_limit must not be looser than request_limit' in text
        assert '= note: request_limit=100/60000ms' in text
        assert '= note: submit_limit=200/60000ms' in text
        assert '= help:' in text
        assert 'lower submit_limit.limit' in text
        assert '\033[' not in text

    def test_str_is_plain(self) -> None:
        err = StartupError(message='store unreachable', code=ErrorCode.STORE_UNREACHABLE)
        assert str(err) == err.render(use_colors=False)

    def test_colored_render(self) -> None:
        err = ConveyorError(message='boom')
        assert '\033[' in err.render(use_colors=True)

    def test_without_code(self) -> None:
        assert 'error: boom' in ConveyorError(message='boom').render(use_colors=False)

    def test_multiline_note_is_indented(self) -> None:
        err = ConveyorError(message='m', notes=['first\nsecond'])
        lines = err.render(use_colors=False).splitlines()
        assert any(line.endswith('note: first') for line in lines)
        assert '          second' in lines

    def test_with_note_chains(self) -> None:
        err = ConveyorError(message='m').with_note('a').with_note('b')
        assert err.notes == ['a', 'b']

    def test_notes_are_not_shared(self) -> None:
        a = ConveyorError(message='a')
        b = ConveyorError(message='b')
        a.with_note('only a')
        assert b.notes == []


class TestRaiseCollected:
    def test_empty_report_is_noop(self) -> None:
        raise_collected(ValidationReport('config'))

    def test_single_error_raised_unchanged(self) -> None:
        report = ValidationReport('config')
        err = ConfigurationError(message='one', code=ErrorCode.CONFIG_INVALID_QUEUE)
        report.add(err)
        with pytest.raises(ConfigurationError) as exc_info:
            raise_collected(report)
        assert exc_info.value is err

    def test_multiple_errors_are_wrapped(self) -> None:
        report = ValidationReport('check')
        report.add(ConfigurationError(message='first'))
        report.add(StartupError(message='second'))
        with pytest.raises(MultipleValidationErrors) as exc_info:
            raise_collected(report)
        text = str(exc_info.value)
        assert 'first' in text
        assert 'second' in text
        assert 'check: aborting due to 2 previous errors' in text


class TestExceptHook:
    def test_install_and_uninstall(self, _restore_excepthook: None) -> None:
        install_error_handler()
        assert sys.excepthook is _conveyor_excepthook
        uninstall_error_handler()
        assert sys.excepthook is not _conveyor_excepthook

    def test_renders_conveyor_errors(self) -> None:
        err = ConfigurationError(message='bad config', code=ErrorCode.CONFIG_INVALID_ORIGINS)
        buf = StringIO()
        with mock.patch.object(sys, 'stderr', buf):
            _conveyor_excepthook(ConfigurationError, err, None)
        assert 'error[E213]: bad config' in buf.getvalue()
        assert 'Traceback' not in buf.getvalue()

    def test_verbose_adds_traceback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv('CONVEYOR_VERBOSE', '1')
        try:
            raise ConfigurationError(message='bad config')
        except ConfigurationError as e:
            err = e
        buf = StringIO()
        with mock.patch.object(sys, 'stderr', buf):
            _conveyor_excepthook(ConfigurationError, err, err.__traceback__)
        assert 'Traceback' in buf.getvalue()

    def test_delegates_other_exceptions(self) -> None:
        with mock.patch('conveyor.core.errors._original_excepthook') as original:
            exc = ValueError('x')
            _conveyor_excepthook(ValueError, exc, None)
        original.assert_called_once_with(ValueError, exc, None)
