"""Startup and configuration errors with compiler-style rendering."""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes for startup/configuration errors.

    Organized by category:
    - E200-E299: Config errors
    - E400-E499: Startup/connectivity errors
    """

    # Config (E200-E299)
    BROKER_INVALID_URL = 'E203'
    CLI_INVALID_ARGS = 'E206'
    CONFIG_INVALID_RESILIENCE = 'E208'
    CONFIG_INVALID_RATE_LIMIT = 'E210'
    CONFIG_INVALID_BREAKER = 'E211'
    CONFIG_INVALID_QUEUE = 'E212'
    CONFIG_INVALID_ORIGINS = 'E213'
    CONFIG_INVALID_HANDLERS = 'E214'
    CONFIG_INVALID_TIMING = 'E215'

    # Startup (E400-E499)
    STORE_UNREACHABLE = 'E400'
    SCHEMA_INIT_FAILED = 'E401'
    LISTENER_UNAVAILABLE = 'E402'


class _Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'


class _NoColors:
    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    GREEN = ''


def _should_use_colors() -> bool:
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    return os.environ.get('CONVEYOR_VERBOSE', '').lower() in ('1', 'true', 'yes')


@dataclass
class ConveyorError(Exception):
    """Base exception for conveyor startup/configuration errors.

    Rendered as:

        error[E210]: message
           = note: ...

           = help:
                ...
    """

    message: str
    code: ErrorCode | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def with_note(self, note: str) -> ConveyorError:
        self.notes.append(note)
        return self

    def render(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors

        code_part = f'[{self.code.value}]' if self.code else ''
        lines = ['', f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}']

        for note in self.notes:
            first, *rest = note.split('\n')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {first}')
            lines.extend(f'          {line}' for line in rest)

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            lines.extend(f'        {line}' for line in self.help_text.split('\n'))

        return '\n'.join(lines)

    def __str__(self) -> str:
        # Plain text: safe for log handlers and non-terminal sinks
        return self.render(use_colors=False)


@dataclass
class ConfigurationError(ConveyorError):
    """Raised when application configuration is invalid."""

    pass


@dataclass
class StartupError(ConveyorError):
    """Raised when a startup connectivity check fails. Always fatal."""

    pass


class ValidationReport:
    """Collects the errors of one validation phase so they are reported together."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[ConveyorError] = []

    def add(self, error: ConveyorError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def render(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors
        parts = [error.render(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: '
            f'{self.phase_name}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.render(use_colors=False)


@dataclass
class MultipleValidationErrors(ConveyorError):
    """Wraps a ValidationReport holding two or more errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def render(self, use_colors: bool | None = None) -> str:
        return self.report.render(use_colors=use_colors)

    def __str__(self) -> str:
        return self.render(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise what the report collected.

    - 0 errors: no-op
    - 1 error: raises that error unchanged
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


_original_excepthook = sys.excepthook


def _conveyor_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    if isinstance(exc_value, ConveyorError):
        print(exc_value.render(), file=sys.stderr)
        if _should_show_verbose():
            traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)
        return
    _original_excepthook(exc_type, exc_value, exc_tb)


def install_error_handler() -> None:
    """Render uncaught ConveyorErrors compactly instead of as a traceback."""
    sys.excepthook = _conveyor_excepthook


def uninstall_error_handler() -> None:
    sys.excepthook = _original_excepthook
